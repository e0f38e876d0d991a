import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import ConsoleConfig
from .connections import ConnectionFactory, DatabaseError

logger = logging.getLogger(__name__)

PRODUCTION_LABEL = "PROD"
PRODUCTION_BLOCKED_MESSAGE = "Operation not allowed on Production instance"

FOUND = "found"
NOT_FOUND = "not_found"
FAILED = "failed"

# A bare host name prefers the default instance when several instances are registered.
_LOOKUP_SQL = """
SELECT TOP 1 EnvironmentName
FROM vw_InstanceOverview
WHERE ServerName = ?
  {instance_filter}
ORDER BY CASE WHEN InstanceName IN ('MSSQLSERVER', ServerName) THEN 0 ELSE 1 END,
         InstanceName
"""


def split_server_name(server_name: str) -> Tuple[str, Optional[str]]:
    """Split ``host\\instance`` into its parts; a plain host has no instance."""
    host, _, instance = server_name.strip().partition("\\")
    return host, instance or None


@dataclass(frozen=True)
class EnvironmentLookup:
    status: str
    label: Optional[str] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == FOUND

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def is_production(self) -> bool:
        return self.found and (self.label or "").strip().upper() == PRODUCTION_LABEL


class EnvironmentClassifier:
    """Resolves a server's environment label from the inventory store."""

    def __init__(self, factory: ConnectionFactory, config: ConsoleConfig):
        self._factory = factory
        self._config = config

    def classify(self, server_name: str) -> EnvironmentLookup:
        host, instance = split_server_name(server_name)
        if instance:
            sql = _LOOKUP_SQL.format(instance_filter="AND InstanceName = ?")
            params = (host, instance)
        else:
            sql = _LOOKUP_SQL.format(instance_filter="")
            params = (host,)

        descriptor = self._factory.descriptor(self._config.inventory_server, self._config.inventory_database)
        try:
            with self._factory.connect(descriptor, timeout=self._config.query_timeout) as conn:
                label = conn.scalar(sql, params)
        except DatabaseError as exc:
            logger.error(f"Environment lookup for {server_name} failed: {exc.text}")
            return EnvironmentLookup(FAILED, error=exc.text)

        if label is None:
            logger.info(f"Server {server_name} not found in inventory")
            return EnvironmentLookup(NOT_FOUND)

        label = str(label).strip()
        logger.info(f"Server {server_name} resolved to environment {label}")
        return EnvironmentLookup(FOUND, label=label)
