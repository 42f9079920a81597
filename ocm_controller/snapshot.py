"""
Snapshots: cached, content-addressed results of a resolve or mutation step.
"""

import logging
import tempfile
from dataclasses import dataclass, field

from .archive import build_tar
from .cache import OCICache
from .config import config
from .context import Context
from .identity import Identity, name_for, select_tag

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Describes one cached artifact."""

    identity: Identity
    digest: str
    tag: str
    repository_url: str
    media_type: str = ""
    size: int = -1
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return name_for(self.identity)

    @property
    def url(self) -> str:
        return f"{self.repository_url}/{self.name}:{self.tag}"

    def to_dict(self) -> dict:
        return {
            "identity": dict(self.identity),
            "name": self.name,
            "digest": self.digest,
            "tag": self.tag,
            "repositoryURL": self.repository_url,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        return cls(
            identity={str(k): str(v) for k, v in (data.get("identity") or {}).items()},
            digest=data.get("digest", ""),
            tag=data.get("tag", ""),
            repository_url=data.get("repositoryURL") or data.get("repository_url", ""),
            size=int(data.get("size", -1)),
        )


class SnapshotWriter:
    """Packages directories and stores them in the cache as Snapshots."""

    def __init__(self, cache: OCICache):
        self.cache = cache

    def write_directory(
        self,
        ctx: Context,
        source_dir: str,
        identity: Identity,
        tag: str | None = None,
        media_type: str | None = None,
        exact_tag: bool = False,
    ) -> Snapshot:
        """
        Tar ``source_dir`` reproducibly and push it under the identity's name.

        The tag follows :func:`ocm_controller.identity.select_tag` with ``tag``
        as the caller supplied fallback, unless ``exact_tag`` is set.
        """
        name = name_for(identity)
        snapshot_tag = tag if exact_tag and tag else select_tag(identity, fallback=tag)
        with tempfile.TemporaryFile(prefix="snapshot-artifact-", dir=config.WORK_DIR) as artifact:
            build_tar(source_dir, artifact, ctx)
            artifact.seek(0)
            digest, size = self.cache.push_data(ctx, artifact, name, snapshot_tag, media_type)

        snapshot = Snapshot(
            identity=dict(identity),
            digest=digest,
            tag=snapshot_tag,
            repository_url=self.cache.registry_url,
            media_type=media_type or "",
            size=size,
        )
        logger.info(f"Wrote snapshot {snapshot.name}:{snapshot.tag} digest={digest}")
        return snapshot

    def delete(self, ctx: Context, snapshot: Snapshot) -> None:
        """Remove the snapshot's cache entry. Deleting twice is not an error."""
        self.cache.delete_data(ctx, snapshot.name, snapshot.tag)
