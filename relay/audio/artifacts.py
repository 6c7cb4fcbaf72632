import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from core.errors import ArtifactError

FALLBACK_DIR = Path(__file__).resolve().parent.parent / "tmp_voice_relay"


class ArtifactScope:
    """Temporary files owned by one pipeline call.

    Every file written through the scope is deleted when the scope closes,
    whatever the outcome of the call.
    """

    def __init__(self, store: "ArtifactStore"):
        self._store = store
        self.paths: list[Path] = []

    def write(self, prefix: str, data: bytes, suffix: str = ".mp3") -> Path:
        if not data:
            raise ArtifactError(f"No audio data to save for {prefix}.")
        path = self._store.new_path(prefix, suffix)
        self.paths.append(path)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise ArtifactError(f"No se pudo guardar el archivo de audio temporal: {e}") from e
        logger.debug("Saved {} bytes to {}", len(data), path)
        return path

    def close(self) -> None:
        self._store.discard(*self.paths)
        self.paths.clear()


class ArtifactStore:
    """Directory holding downloaded and synthesized audio files."""

    def __init__(self, base_dir: Path, fallback_dir: Optional[Path] = FALLBACK_DIR):
        self.base_dir = Path(base_dir)
        self.fallback_dir = fallback_dir

    def prepare(self) -> Path:
        """Create the temp directory, falling back to a local one if needed."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Temp directory ready: {}", self.base_dir)
            return self.base_dir
        except OSError as e:
            logger.error("Cannot create temp directory {}: {}", self.base_dir, e)
            if self.fallback_dir is None:
                raise ArtifactError(f"Cannot create temp directory {self.base_dir}") from e

        try:
            self.fallback_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactError(
                f"Cannot create temp directory {self.base_dir} or fallback {self.fallback_dir}"
            ) from e
        logger.warning("Using fallback temp directory: {}", self.fallback_dir)
        self.base_dir = self.fallback_dir
        return self.base_dir

    def new_path(self, prefix: str, suffix: str = ".mp3") -> Path:
        stamp = int(time.time() * 1000)
        return self.base_dir / f"{prefix}_{stamp}_{uuid.uuid4().hex[:8]}{suffix}"

    @staticmethod
    def ensure_readable(path: Path) -> Path:
        try:
            size = path.stat().st_size if path.is_file() else None
        except OSError as e:
            raise ArtifactError(f"Cannot read audio file {path.name}: {e}") from e
        if size is None:
            raise ArtifactError(f"Audio file not found: {path.name}")
        if size == 0:
            raise ArtifactError(f"Audio file is empty: {path.name}")
        return path

    def discard(self, *paths: Path) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Could not delete temp file {}: {}", path, e)

    @contextmanager
    def scope(self) -> Iterator[ArtifactScope]:
        scope = ArtifactScope(self)
        try:
            yield scope
        finally:
            scope.close()
