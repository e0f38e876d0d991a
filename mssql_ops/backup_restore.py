"""Back up, restore and refresh SQL Server databases.

Usage::

    mssql-backup backup  --server SQL01 --database Sales --backup-dir \\\\fs01\\backups --copy-only
    mssql-backup restore --server SQL02 --database Sales_QA --backup-file \\\\fs01\\backups\\Sales.bak --overwrite
    mssql-backup refresh --source-server SQL01 --source-database Sales \\
                         --target-server SQL02 --target-database Sales_QA \\
                         --backup-dir \\\\fs01\\backups --overwrite

Every command exits 0 on success and 1 on any handled failure. Progress is
logged with timestamps to standard output.
"""

import argparse
import dataclasses
import logging
import ntpath
import os
import posixpath
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import ContextManager, List, Optional, Sequence, Tuple

from .config import ConnectionSettings, configure_logging, load_connection_settings
from .connections import ConnectionFactory, ConsoleConnection, DatabaseError, InfoMessage
from .sql_text import quote_literal, quote_name

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600


class BackupRestoreError(Exception):
    pass


@dataclass(frozen=True)
class BackupFile:
    """One row of ``RESTORE FILELISTONLY``."""
    logical_name: str
    physical_name: str
    file_type: str

    @property
    def is_log(self) -> bool:
        return self.file_type.upper() == "L"

    @property
    def is_filestream(self) -> bool:
        return self.file_type.upper() == "S"


def _path_module(directory: str):
    if "\\" in directory or re.match(r"^[A-Za-z]:", directory):
        return ntpath
    return posixpath


def join_server_path(directory: str, file_name: str) -> str:
    """Join a path on the database server, which may not share our OS."""
    return _path_module(directory).join(directory, file_name)


def default_backup_file_name(database: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{database}_{now:%Y%m%d_%H%M%S}.bak"


def build_backup_statement(database: str, backup_file: str, copy_only: bool = False, overwrite: bool = False) -> str:
    options = []
    if copy_only:
        options.append("COPY_ONLY")
    options.append("INIT" if overwrite else "NOINIT")
    options.extend(["CHECKSUM", "STATS = 10"])
    return (
        f"BACKUP DATABASE {quote_name(database)}\n"
        f"TO DISK = {quote_literal(backup_file)}\n"
        f"WITH {', '.join(options)}"
    )


def target_file_name(target_database: str, backup_file: BackupFile, index: int) -> str:
    """Physical file name for the ``index``-th data (or log) file of the restored database."""
    if backup_file.is_filestream:
        return f"{target_database}_{backup_file.logical_name}"

    extension = ntpath.splitext(ntpath.basename(backup_file.physical_name))[1]
    if backup_file.is_log:
        suffix = "_log" if index == 0 else f"_log{index + 1}"
        extension = extension or ".ldf"
    else:
        suffix = "" if index == 0 else f"_{index + 1}"
        extension = extension or (".mdf" if index == 0 else ".ndf")
    return f"{target_database}{suffix}{extension}"


def build_move_clauses(files: Sequence[BackupFile], target_database: str, data_dir: str, log_dir: str) -> List[str]:
    clauses = []
    data_index = 0
    log_index = 0
    for backup_file in files:
        if backup_file.is_log:
            name = target_file_name(target_database, backup_file, log_index)
            directory = log_dir
            log_index += 1
        else:
            name = target_file_name(target_database, backup_file, data_index)
            directory = data_dir
            data_index += 1
        path = join_server_path(directory, name)
        clauses.append(f"MOVE {quote_literal(backup_file.logical_name)} TO {quote_literal(path)}")
    return clauses


def build_restore_statement(database: str, backup_file: str, move_clauses: Sequence[str], overwrite: bool = False) -> str:
    options = list(move_clauses)
    if overwrite:
        options.append("REPLACE")
    options.extend(["RECOVERY", "STATS = 10"])
    return (
        f"RESTORE DATABASE {quote_name(database)}\n"
        f"FROM DISK = {quote_literal(backup_file)}\n"
        f"WITH " + ",\n     ".join(options)
    )


def read_file_list(conn: ConsoleConnection, backup_file: str) -> List[BackupFile]:
    result = conn.execute(f"RESTORE FILELISTONLY FROM DISK = {quote_literal(backup_file)}")
    files = []
    for row in result.rows:
        record = dict(zip(result.columns or [], row))
        files.append(BackupFile(
            logical_name=record["LogicalName"],
            physical_name=record["PhysicalName"],
            file_type=record["Type"],
        ))
    return files


def default_directories(conn: ConsoleConnection) -> Tuple[str, str]:
    result = conn.execute(
        "SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000)), "
        "CAST(SERVERPROPERTY('InstanceDefaultLogPath') AS nvarchar(4000))"
    )
    data_dir, log_dir = result.rows[0] if result.rows else (None, None)
    if not data_dir or not log_dir:
        raise BackupRestoreError(
            f"Could not determine the default data/log directories on {conn.descriptor.server}; "
            "pass --data-dir and --log-dir"
        )
    return data_dir, log_dir


def default_backup_directory(conn: ConsoleConnection) -> str:
    directory = conn.scalar("SELECT CAST(SERVERPROPERTY('InstanceDefaultBackupPath') AS nvarchar(4000))")
    if not directory:
        raise BackupRestoreError(
            f"Could not determine the default backup directory on {conn.descriptor.server}; pass --backup-dir"
        )
    return directory


def database_exists(conn: ConsoleConnection, database: str) -> bool:
    return conn.scalar("SELECT DB_ID(?)", (database,)) is not None


def _log_engine_message(message: InfoMessage) -> None:
    if message.is_error:
        logger.warning(message.text)
    else:
        logger.info(message.text)


class BackupRestoreRunner:
    """Runs BACKUP/RESTORE statements, one connection to ``master`` per operation."""

    def __init__(self, factory: ConnectionFactory, timeout: int = DEFAULT_TIMEOUT):
        self._factory = factory
        self._timeout = timeout

    def _connect(self, server: str) -> ContextManager[ConsoleConnection]:
        return self._factory.connect(self._factory.descriptor(server, "master"), timeout=self._timeout)

    def _run(self, conn: ConsoleConnection, sql: str) -> None:
        logger.info(f"Executing on {conn.descriptor.server}: {sql.splitlines()[0]}")
        with conn.listening(_log_engine_message):
            conn.execute(sql)

    def backup(
        self,
        server: str,
        database: str,
        backup_file: Optional[str] = None,
        backup_dir: Optional[str] = None,
        copy_only: bool = False,
        overwrite: bool = False,
    ) -> str:
        """Back up ``database`` and return the backup file path."""
        with self._connect(server) as conn:
            if not database_exists(conn, database):
                raise BackupRestoreError(f"Database '{database}' does not exist on {server}")
            if not backup_file:
                directory = backup_dir or default_backup_directory(conn)
                backup_file = join_server_path(directory, default_backup_file_name(database))

            logger.info(f"Backing up {server}/{database} to {backup_file} (copy_only={copy_only})")
            self._run(conn, build_backup_statement(database, backup_file, copy_only=copy_only, overwrite=overwrite))

        logger.info(f"Backup of {database} completed: {backup_file}")
        return backup_file

    def restore(
        self,
        server: str,
        database: str,
        backup_file: str,
        data_dir: Optional[str] = None,
        log_dir: Optional[str] = None,
        overwrite: bool = False,
    ) -> None:
        """Restore ``backup_file`` as ``database``, relocating every file with MOVE clauses."""
        with self._connect(server) as conn:
            files = read_file_list(conn, backup_file)
            if not files:
                raise BackupRestoreError(f"Backup file {backup_file} contains no database files")

            if not data_dir or not log_dir:
                default_data, default_log = default_directories(conn)
                data_dir = data_dir or default_data
                log_dir = log_dir or default_log

            exists = database_exists(conn, database)
            if exists and not overwrite:
                raise BackupRestoreError(
                    f"Database '{database}' already exists on {server}; use --overwrite to replace it"
                )

            moves = build_move_clauses(files, database, data_dir, log_dir)
            statement = build_restore_statement(database, backup_file, moves, overwrite=overwrite)

            if exists:
                logger.info(f"Setting {database} to SINGLE_USER before restore")
                self._run(conn, f"ALTER DATABASE {quote_name(database)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE")

            logger.info(f"Restoring {backup_file} to {server}/{database} ({len(files)} files)")
            try:
                self._run(conn, statement)
            except DatabaseError:
                if exists:
                    self._reset_multi_user(conn, database)
                raise

        logger.info(f"Restore of {database} on {server} completed")

    def _reset_multi_user(self, conn: ConsoleConnection, database: str) -> None:
        try:
            self._run(conn, f"ALTER DATABASE {quote_name(database)} SET MULTI_USER")
        except DatabaseError as exc:
            logger.warning(f"Could not set {database} back to MULTI_USER: {exc.text}")

    def refresh(
        self,
        source_server: str,
        source_database: str,
        target_server: str,
        target_database: str,
        backup_dir: str,
        data_dir: Optional[str] = None,
        log_dir: Optional[str] = None,
        overwrite: bool = False,
    ) -> str:
        """Copy-only backup of the source database, restored onto the target."""
        backup_file = self.backup(source_server, source_database, backup_dir=backup_dir, copy_only=True, overwrite=True)
        self.restore(target_server, target_database, backup_file, data_dir=data_dir, log_dir=log_dir, overwrite=overwrite)
        return backup_file


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--username",
        default=os.environ.get("SQL_USERNAME") or os.environ.get("SQL_USER"),
        help="SQL login. Defaults to env SQL_USERNAME or SQL_USER.",
    )
    common.add_argument(
        "--password",
        default=os.environ.get("SQL_PASSWORD"),
        help="SQL password. Defaults to env SQL_PASSWORD.",
    )
    common.add_argument(
        "--use-windows-auth",
        action="store_true",
        help="Use integrated authentication even when a username is configured.",
    )
    common.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Command timeout in seconds.")
    common.add_argument("--driver", default=None, help="ODBC driver name. Defaults to env SQL_DRIVER.")
    common.add_argument("--log-level", default="INFO")

    parser = argparse.ArgumentParser(prog="mssql-backup", description="SQL Server backup, restore and refresh")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", parents=[common], help="Back up a database")
    backup.add_argument("--server", required=True)
    backup.add_argument("--database", required=True)
    target = backup.add_mutually_exclusive_group()
    target.add_argument("--backup-file")
    target.add_argument("--backup-dir")
    backup.add_argument("--copy-only", action="store_true")
    backup.add_argument("--overwrite", action="store_true", help="Overwrite an existing backup file (INIT).")

    restore = commands.add_parser("restore", parents=[common], help="Restore a database from a backup file")
    restore.add_argument("--server", required=True)
    restore.add_argument("--database", required=True)
    restore.add_argument("--backup-file", required=True)
    restore.add_argument("--data-dir")
    restore.add_argument("--log-dir")
    restore.add_argument("--overwrite", action="store_true", help="Replace an existing database.")

    refresh = commands.add_parser("refresh", parents=[common], help="Copy a database from one server to another")
    refresh.add_argument("--source-server", required=True)
    refresh.add_argument("--source-database", required=True)
    refresh.add_argument("--target-server", required=True)
    refresh.add_argument("--target-database", required=True)
    refresh.add_argument("--backup-dir", required=True, help="Directory both servers can reach.")
    refresh.add_argument("--data-dir")
    refresh.add_argument("--log-dir")
    refresh.add_argument("--overwrite", action="store_true", help="Replace the target database if it exists.")

    return parser


def _settings_from_args(args: argparse.Namespace) -> ConnectionSettings:
    base = load_connection_settings()
    username = None if args.use_windows_auth else (args.username or None)
    return dataclasses.replace(
        base,
        driver=args.driver or base.driver,
        username=username,
        password=args.password if username else None,
    )


def main(argv: Optional[Sequence[str]] = None, factory: Optional[ConnectionFactory] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.timeout <= 0:
        parser.error("--timeout must be positive")

    configure_logging(args.log_level, stream=sys.stdout)

    settings = _settings_from_args(args)
    logger.info(f"Authentication: {'SQL login ' + settings.username if settings.username else 'integrated'}")
    runner = BackupRestoreRunner(factory or ConnectionFactory(settings), timeout=args.timeout)

    try:
        if args.command == "backup":
            runner.backup(
                args.server,
                args.database,
                backup_file=args.backup_file,
                backup_dir=args.backup_dir,
                copy_only=args.copy_only,
                overwrite=args.overwrite,
            )
        elif args.command == "restore":
            runner.restore(
                args.server,
                args.database,
                args.backup_file,
                data_dir=args.data_dir,
                log_dir=args.log_dir,
                overwrite=args.overwrite,
            )
        else:
            runner.refresh(
                args.source_server,
                args.source_database,
                args.target_server,
                args.target_database,
                args.backup_dir,
                data_dir=args.data_dir,
                log_dir=args.log_dir,
                overwrite=args.overwrite,
            )
    except BackupRestoreError as exc:
        logger.error(f"{args.command} failed: {exc}")
        return 1
    except DatabaseError as exc:
        logger.error(f"{args.command} failed: {exc.text}")
        return 1

    logger.info(f"{args.command} completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
