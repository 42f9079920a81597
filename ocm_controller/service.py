"""
Wiring of the resolver, cache and mutation engine from configuration.
"""

import logging

from .cache import OCICache
from .config import Config, config as default_config
from .evaluator import TemplateEvaluator
from .mutation import MutationEngine
from .oci import CredentialStore, RegistryClient
from .ocm import DescriptorStore, Resolver
from .snapshot import SnapshotWriter

logger = logging.getLogger(__name__)


class Service:
    """
    One set of collaborating subsystems sharing a cache and descriptor store.

    Args:
        registry_client: Client for component registries
        cache_client: Client for the cache registry
        cfg: Configuration, defaults to the global one
    """

    def __init__(
        self,
        registry_client: RegistryClient,
        cache_client: RegistryClient,
        cfg: Config | None = None,
    ):
        self.config = cfg or default_config
        self.cache = OCICache(cache_client, self.config.CACHE_REGISTRY_URL, self.config.CHUNK_SIZE)
        self.store = DescriptorStore()
        self.resolver = Resolver(
            registry_client,
            cache=self.cache,
            store=self.store,
            max_depth=self.config.MAX_REFERENCE_DEPTH,
            descriptor_cache_size=self.config.DESCRIPTOR_CACHE_SIZE,
        )
        self.writer = SnapshotWriter(self.cache)
        self.engine = MutationEngine(self.resolver, self.cache, TemplateEvaluator(), self.writer)

    @classmethod
    def from_config(cls, cfg: Config | None = None) -> "Service":
        """Build clients from configuration, loading registry credentials if configured."""
        cfg = cfg or default_config
        credentials = CredentialStore()
        if cfg.DOCKER_CONFIG_FILE:
            credentials = CredentialStore.from_file(cfg.DOCKER_CONFIG_FILE)
            logger.info(f"Loaded registry credentials from {cfg.DOCKER_CONFIG_FILE}")

        registry_client = RegistryClient(
            credentials=credentials,
            insecure=cfg.REGISTRY_INSECURE,
            timeout=cfg.REGISTRY_TIMEOUT,
            chunk_size=cfg.CHUNK_SIZE,
        )
        cache_client = RegistryClient(
            credentials=credentials,
            insecure=cfg.CACHE_INSECURE,
            timeout=cfg.REGISTRY_TIMEOUT,
            chunk_size=cfg.CHUNK_SIZE,
        )
        return cls(registry_client, cache_client, cfg)
