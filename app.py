"""
OCM controller core service.

Serves the component resolver, the snapshot cache and the localization and
configuration mutation engine over HTTP. Component versions are read from OCI
registries following the OCM OCI mapping; every fetched resource and every
mutation result is cached as a single-layer image in the cache registry under
a name derived from its identity.

Features:
    - Component version lookup, semver selection and signature verification
    - Recursive reference resolution with cycle and depth checks
    - Content-addressable snapshot cache on any OCI registry
    - Localization of image references from resource access specifications
    - Configuration of files from ConfigData rules, defaults and values
    - Strategic merge patches from source archives
    - Configurable via environment variables

Endpoints:
    - POST   /v1/components/resolve
    - POST   /v1/resources
    - POST   /v1/mutations
    - DELETE /v1/snapshots/<name>/tags/<tag>
    - GET    /healthz

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, CACHE_REGISTRY_URL, CACHE_INSECURE,
    REGISTRY_INSECURE, REGISTRY_TIMEOUT, DOCKER_CONFIG_FILE, MAX_REFERENCE_DEPTH,
    DESCRIPTOR_CACHE_SIZE, CHUNK_SIZE, MAX_NAME_LENGTH, MAX_TAG_LENGTH, WORK_DIR

Example:
    $ LOG_LEVEL=DEBUG CACHE_REGISTRY_URL=localhost:5000 python app.py
    $ curl -X POST localhost:8080/v1/components/resolve \
        -d '{"repositoryURL": "ghcr.io/acme", "name": "acme.org/app", "semver": "^1.0"}' \
        -H 'Content-Type: application/json'
"""

import logging

from ocm_controller.config import config
from ocm_controller.routes import create_app

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the controller service."""
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    logger.info(f"Starting OCM controller service on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Configuration: {config}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")
    if debug_mode:
        logger.info("Flask debug mode enabled")
    app = create_app()
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode)


if __name__ == "__main__":
    main()
