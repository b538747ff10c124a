import logging
import shutil
from pathlib import Path

from .exceptions import FilenameParseError
from .models import DownloadBatch, PackageIdentity, RepoId
from .repo_parser import parse_rpm_filename

logger = logging.getLogger(__name__)

LOCAL_BUILD_REPO = RepoId("rpmbuild")


class LocalBuildSource:
    """
    Packages built on this host (an rpmbuild RPMS tree). They are mirrored
    into their own repository by copying, never through dnf.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._index: dict[str, Path] | None = None

    @property
    def index(self) -> dict[str, Path]:
        # name-version-release.arch -> built file, scanned once per run
        if self._index is None:
            index = {}
            if self.root.is_dir():
                for path in sorted(self.root.rglob("*.rpm")):
                    try:
                        identity = parse_rpm_filename(path.name)
                    except FilenameParseError as e:
                        logger.debug(f"Ignoring local build {path}: {e}")
                        continue
                    index.setdefault(identity.nvra, path)
            else:
                logger.warning(f"Local build directory {self.root} does not exist")
            self._index = index
            logger.debug(f"Indexed {len(index)} locally built packages under {self.root}")
        return self._index

    def find(self, identity: PackageIdentity) -> Path | None:
        return self.index.get(identity.nvra)

    def download(self, batch: DownloadBatch) -> tuple[bool, str]:
        """Copies the batch's packages into the mirror. Same contract as DnfClient.download."""
        missing = [spec for spec in batch.specs if spec not in self.index]
        if missing:
            return False, f"not found under {self.root}: {', '.join(missing)}"
        try:
            batch.directory.mkdir(parents=True, exist_ok=True)
            for spec in batch.specs:
                shutil.copy2(self.index[spec], batch.directory / self.index[spec].name)
        except OSError as e:
            return False, str(e)
        return True, ""
