"""
Configuration module for the OCM controller core.

Loads all configuration from environment variables with sensible defaults.
"""

import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Controller configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Service bind address. Default: 0.0.0.0
            FLASK_PORT: Service bind port. Default: 8080
            CACHE_REGISTRY_URL: Registry used as snapshot cache (no scheme). Default: localhost:5000
            CACHE_INSECURE: Talk plain HTTP to the cache registry. Default: true
            REGISTRY_INSECURE: Talk plain HTTP to component registries. Default: false
            REGISTRY_TIMEOUT: Timeout for a single registry request in seconds. Default: 60
            DOCKER_CONFIG_FILE: Docker config.json holding registry credentials. Default: unset
            MAX_REFERENCE_DEPTH: Deepest component reference chain resolved. Default: 32
            DESCRIPTOR_CACHE_SIZE: Number of fetched component descriptors to keep. Default: 128
            CHUNK_SIZE: Streaming chunk size in bytes. Default: 1048576
            MAX_NAME_LENGTH: Maximum repository name length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128
            WORK_DIR: Parent directory for ephemeral working trees. Default: system temp dir
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "8080"))

        # Registries
        self.CACHE_REGISTRY_URL = os.getenv("CACHE_REGISTRY_URL", "localhost:5000")
        self.CACHE_INSECURE = _as_bool(os.getenv("CACHE_INSECURE", "true"))
        self.REGISTRY_INSECURE = _as_bool(os.getenv("REGISTRY_INSECURE", "false"))
        self.REGISTRY_TIMEOUT = float(os.getenv("REGISTRY_TIMEOUT", "60"))  # seconds
        self.DOCKER_CONFIG_FILE = os.getenv("DOCKER_CONFIG_FILE", "")

        # Resolver
        self.MAX_REFERENCE_DEPTH = int(os.getenv("MAX_REFERENCE_DEPTH", "32"))
        self.DESCRIPTOR_CACHE_SIZE = int(os.getenv("DESCRIPTOR_CACHE_SIZE", "128"))

        # Streaming
        self.CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", str(1024 * 1024)))

        # Validation limits
        self.MAX_NAME_LENGTH = int(os.getenv("MAX_NAME_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

        # Working trees
        self.WORK_DIR = os.getenv("WORK_DIR") or None

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"CACHE_REGISTRY_URL={self.CACHE_REGISTRY_URL}, "
            f"CACHE_INSECURE={self.CACHE_INSECURE}, "
            f"MAX_REFERENCE_DEPTH={self.MAX_REFERENCE_DEPTH})"
        )


# Global config instance
config = Config()
