"""
CosmosDB Client for Glucose Ensemble
Owns the Cosmos connection and the ledger/cache containers.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from azure.cosmos import CosmosClient, PartitionKey, exceptions
from azure.cosmos.container import ContainerProxy
from azure.cosmos.database import DatabaseProxy

from config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    partition_key: str = "/patientId"
    ttl_days: Optional[int] = None  # None keeps items forever


PREDICTIONS = "predictions"
SAMPLE_CACHE = "sample_cache"
DOSE_CACHE = "dose_cache"


def container_specs(settings: Settings) -> Dict[str, ContainerSpec]:
    """Ledger is permanent; cached source data expires after the retention period."""
    retention = settings.cache_retention_days or None
    return {
        PREDICTIONS: ContainerSpec(PREDICTIONS),
        SAMPLE_CACHE: ContainerSpec(SAMPLE_CACHE, ttl_days=retention),
        DOSE_CACHE: ContainerSpec(DOSE_CACHE, ttl_days=retention),
    }


class CosmosDBManager:
    """Lazily connects to CosmosDB and hands out container proxies by name."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.specs = container_specs(settings)
        self._client: Optional[CosmosClient] = None
        self._database: Optional[DatabaseProxy] = None
        self._containers: Dict[str, ContainerProxy] = {}

    @property
    def client(self) -> CosmosClient:
        if self._client is None:
            self._client = CosmosClient(
                url=self.settings.cosmos_endpoint,
                credential=self.settings.cosmos_key
            )
            logger.info(f"CosmosDB client created for {self.settings.cosmos_endpoint}")
        return self._client

    @property
    def database(self) -> DatabaseProxy:
        if self._database is None:
            try:
                self._database = self.client.create_database_if_not_exists(id=self.settings.cosmos_database)
            except exceptions.CosmosHttpResponseError as e:
                logger.error(f"Could not open database '{self.settings.cosmos_database}': {e}")
                raise
        return self._database

    def get_container(self, container_name: str) -> ContainerProxy:
        """Container proxy for a known container, created on first use."""
        if container_name not in self._containers:
            spec = self.specs.get(container_name, ContainerSpec(container_name))
            ttl = spec.ttl_days * 86400 if spec.ttl_days else None
            try:
                self._containers[container_name] = self.database.create_container_if_not_exists(
                    id=spec.name,
                    partition_key=PartitionKey(path=spec.partition_key),
                    default_ttl=ttl
                )
            except exceptions.CosmosHttpResponseError as e:
                logger.error(f"Could not open container '{container_name}': {e}")
                raise
            logger.info(f"Container '{container_name}' ready (ttl={ttl})")
        return self._containers[container_name]

    async def initialize_containers(self) -> None:
        for name in self.specs:
            self.get_container(name)
        logger.info(f"Initialized {len(self.specs)} containers in '{self.settings.cosmos_database}'")

    def ping(self) -> bool:
        """True if the database answers a metadata read."""
        try:
            self.database.read()
            return True
        except exceptions.CosmosHttpResponseError as e:
            logger.warning(f"CosmosDB ping failed: {e}")
            return False

    def close(self) -> None:
        # CosmosClient holds no sockets we must release; drop the proxies.
        self._containers.clear()
        self._database = None
        self._client = None
        logger.info("CosmosDB client released")
