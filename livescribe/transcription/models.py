"""
Model catalog and lifecycle management for LiveScribe.

``ModelManager`` drives one model through
NOT_DOWNLOADED -> DOWNLOADING -> LOADING -> READY, with ERROR reachable from
anywhere. Whether a model counts as downloaded is decided only by the
presence of its main file on disk.
"""

import logging
import shutil
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import requests

from ..config import RetryConfig
from ..exceptions import (
    ModelDownloadError,
    ModelError,
    ModelLoadError,
    ModelNotDownloadedError,
)
from ..retry import with_retry
from .engine import InferenceEngine

logger = logging.getLogger(__name__)

HUGGINGFACE_BASE_URL = "https://huggingface.co"
DOWNLOAD_CHUNK_SIZE = 1 << 20
DOWNLOAD_TIMEOUT_S = 30.0

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class ModelDescriptor:
    """
    A downloadable faster-whisper model.

    Attributes:
        id: Short identifier used in configuration ("base", "small", ...).
        display_name: Human-readable name with size hint.
        repo_id: Hugging Face repository holding the CTranslate2 model.
        file_name: Main weights file; its presence marks the model as
            downloaded.
        support_files: Small companion files fetched before the main file.
        size_class: Rough size label ("tiny", "small", "large").
    """
    id: str
    display_name: str
    repo_id: str
    file_name: str = "model.bin"
    support_files: Tuple[str, ...] = ("config.json", "tokenizer.json", "vocabulary.txt")
    size_class: str = "small"

    def url_for(self, file_name: str) -> str:
        return f"{HUGGINGFACE_BASE_URL}/{self.repo_id}/resolve/main/{file_name}"

    @property
    def remote_url(self) -> str:
        return self.url_for(self.file_name)

    @property
    def all_files(self) -> Tuple[str, ...]:
        # Main file last so that its presence implies the rest are there
        return self.support_files + (self.file_name,)


MODEL_CATALOG: Dict[str, ModelDescriptor] = {
    descriptor.id: descriptor
    for descriptor in (
        ModelDescriptor(
            id="tiny",
            display_name="Tiny (~75MB, fastest, lowest accuracy)",
            repo_id="Systran/faster-whisper-tiny",
            size_class="tiny",
        ),
        ModelDescriptor(
            id="base",
            display_name="Base (~145MB, balanced)",
            repo_id="Systran/faster-whisper-base",
            size_class="small",
        ),
        ModelDescriptor(
            id="small",
            display_name="Small (~485MB, accurate)",
            repo_id="Systran/faster-whisper-small",
            size_class="medium",
        ),
        ModelDescriptor(
            id="large-v3-turbo",
            display_name="Large v3 Turbo (~1.6GB, most accurate)",
            repo_id="mobiuslabsgmbh/faster-whisper-large-v3-turbo",
            support_files=("config.json", "preprocessor_config.json", "tokenizer.json", "vocabulary.json"),
            size_class="large",
        ),
    )
}


def get_model(model_id: str) -> ModelDescriptor:
    """
    Look up a catalog entry.

    Raises:
        ValueError: If ``model_id`` is not in the catalog.
    """
    try:
        return MODEL_CATALOG[model_id]
    except KeyError:
        raise ValueError(
            f"Invalid model '{model_id}'. Valid options: {', '.join(MODEL_CATALOG)}"
        ) from None


class ModelStatus(Enum):
    NOT_DOWNLOADED = "not_downloaded"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class ModelState:
    """Snapshot of the model lifecycle. ``progress`` only matters while downloading."""
    status: ModelStatus = ModelStatus.NOT_DOWNLOADED
    progress: float = 0.0
    message: str = ""

    @classmethod
    def not_downloaded(cls) -> "ModelState":
        return cls(ModelStatus.NOT_DOWNLOADED)

    @classmethod
    def downloading(cls, progress: float) -> "ModelState":
        return cls(ModelStatus.DOWNLOADING, progress=max(0.0, min(1.0, progress)))

    @classmethod
    def loading(cls) -> "ModelState":
        return cls(ModelStatus.LOADING)

    @classmethod
    def ready(cls) -> "ModelState":
        return cls(ModelStatus.READY, progress=1.0)

    @classmethod
    def error(cls, message: str) -> "ModelState":
        return cls(ModelStatus.ERROR, message=message)

    @property
    def is_error(self) -> bool:
        return self.status is ModelStatus.ERROR


# Allowed transitions; ERROR is reachable from every state
_TRANSITIONS = {
    ModelStatus.NOT_DOWNLOADED: {ModelStatus.DOWNLOADING, ModelStatus.LOADING},
    ModelStatus.DOWNLOADING: {ModelStatus.DOWNLOADING, ModelStatus.LOADING},
    ModelStatus.LOADING: {ModelStatus.READY},
    ModelStatus.READY: {ModelStatus.LOADING, ModelStatus.NOT_DOWNLOADED},
    ModelStatus.ERROR: {ModelStatus.NOT_DOWNLOADED},
}


def can_transition(current: ModelStatus, target: ModelStatus) -> bool:
    return target is ModelStatus.ERROR or target in _TRANSITIONS[current]


class _ProgressReporter:
    """Forwards download progress, clamped to [0, 1] and never decreasing."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback
        self.last = 0.0

    def report(self, fraction: float) -> None:
        fraction = max(self.last, min(1.0, max(0.0, fraction)))
        self.last = fraction
        if self._callback is None:
            return
        try:
            self._callback(fraction)
        except Exception as e:
            logger.warning(f"Error in download progress callback: {e}")


class ModelManager:
    """
    Downloads and loads catalog models into an ``InferenceEngine``.

    All transitions are serialized by one lock; loading and unloading also
    take the engine's own lock, so they never overlap an inference call.

    Callbacks:
        on_state_change: Called after every state transition.
            Signature: (state: ModelState) -> None

    Example:
        >>> manager = ModelManager(Path("~/models"), engine)
        >>> manager.ensure_ready(get_model("base"), on_progress=print)
        >>> manager.state.status
        <ModelStatus.READY: 'ready'>
    """

    def __init__(
        self,
        models_dir: Path,
        engine: InferenceEngine,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.models_dir = Path(models_dir).expanduser()
        self.engine = engine
        self._retry = retry_config or RetryConfig()
        self._http = session or requests.Session()

        self._lock = threading.RLock()
        self._state = ModelState.not_downloaded()
        self._loaded_model: Optional[ModelDescriptor] = None

        self.on_state_change: Optional[Callable[[ModelState], None]] = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def loaded_model(self) -> Optional[ModelDescriptor]:
        return self._loaded_model

    @property
    def is_ready(self) -> bool:
        return self._state.status is ModelStatus.READY and self.engine.is_loaded

    def _set_state(self, new_state: ModelState) -> None:
        old_state = self._state
        if not can_transition(old_state.status, new_state.status):
            raise ModelError(
                f"Invalid model state transition: {old_state.status.name} -> {new_state.status.name}"
            )
        self._state = new_state
        if old_state.status is not new_state.status:
            logger.info(f"Model state: {old_state.status.name} -> {new_state.status.name}")

        if self.on_state_change:
            try:
                self.on_state_change(new_state)
            except Exception as e:
                logger.error(f"Error in on_state_change callback: {e}")

    def _fail(self, message: str) -> None:
        self._set_state(ModelState.error(message))

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def model_dir(self, model: ModelDescriptor) -> Path:
        return self.models_dir / model.id

    def model_path(self, model: ModelDescriptor) -> Path:
        return self.model_dir(model) / model.file_name

    def is_downloaded(self, model: ModelDescriptor) -> bool:
        return self.model_path(model).is_file()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ensure_ready(
        self,
        model: ModelDescriptor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Make ``model`` loaded and ready for inference.

        Idempotent: does nothing when ``model`` is already READY. Downloads
        only if the model file is missing and loads only if no context for
        it is alive. A different loaded model is unloaded first.

        Raises:
            ModelDownloadError: If the download fails.
            ModelLoadError: If loading fails.
        """
        with self._lock:
            if self.is_ready and self._loaded_model == model:
                logger.debug(f"Model '{model.id}' already ready")
                return

            if self._state.is_error:
                self._set_state(ModelState.not_downloaded())

            if not self.is_downloaded(model):
                if self._state.status is ModelStatus.READY:
                    self._unload_locked()
                self._download_tracked(model, on_progress)

            self.load(model)

    def download(
        self,
        model: ModelDescriptor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Fetch all files of ``model`` into its directory.

        Only the files are fetched: the lifecycle state is left as it is, so
        a model can be downloaded while another one stays READY. Use
        ``ensure_ready`` to download and load in one step.

        Progress is reported for the main file, which dominates the size.
        When the server does not send a Content-Length the progress stays
        at 0.0. Each file is written to a ``.part`` file and renamed when
        complete.

        Raises:
            ModelDownloadError: If any file cannot be downloaded.
        """
        with self._lock:
            self._download_files(model, _ProgressReporter(on_progress), track_state=False)

    def _download_tracked(
        self,
        model: ModelDescriptor,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        """Download as part of ``ensure_ready``, reporting DOWNLOADING states."""
        self._set_state(ModelState.downloading(0.0))
        try:
            self._download_files(model, _ProgressReporter(on_progress), track_state=True)
        except ModelDownloadError as e:
            self._fail(str(e))
            raise

    def _download_files(
        self,
        model: ModelDescriptor,
        reporter: _ProgressReporter,
        track_state: bool,
    ) -> None:
        reporter.report(0.0)
        target_dir = self.model_dir(model)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            for file_name in model.all_files:
                is_main = file_name == model.file_name
                destination = target_dir / file_name
                if not is_main and destination.is_file():
                    continue
                url = model.url_for(file_name)
                logger.info(f"Downloading {file_name} from {url}")
                with_retry(
                    lambda: self._fetch(url, destination, reporter if is_main else None, track_state),
                    max_attempts=self._retry.max_attempts,
                    initial_delay=self._retry.initial_delay,
                )
        except Exception as e:
            message = f"Failed to download model '{model.id}': {e}"
            logger.error(message)
            raise ModelDownloadError(message) from e

        reporter.report(1.0)
        logger.info(f"Download complete: {self.model_path(model)}")

    def _fetch(
        self,
        url: str,
        destination: Path,
        reporter: Optional[_ProgressReporter],
        track_state: bool = False,
    ) -> None:
        partial = destination.with_name(destination.name + ".part")
        try:
            with self._http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_S) as response:
                response.raise_for_status()
                total = _content_length(response)
                written = 0
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if reporter is not None and total:
                            reporter.report(written / total)
                        if reporter is not None and track_state:
                            self._set_state(ModelState.downloading(reporter.last))
            partial.replace(destination)
        except BaseException:
            try:
                partial.unlink()
            except FileNotFoundError:
                pass
            raise

    def load(self, model: ModelDescriptor) -> None:
        """
        Load ``model`` into the engine.

        Raises:
            ModelNotDownloadedError: If the model file is missing.
            ModelLoadError: If the engine fails to load it.
        """
        with self._lock:
            if self._state.is_error:
                self._set_state(ModelState.not_downloaded())
            if not self.is_downloaded(model):
                message = f"Model has not been downloaded: {model.display_name}"
                self._fail(message)
                raise ModelNotDownloadedError(message)

            if self._loaded_model is not None and self._loaded_model != model:
                logger.info(f"Switching model '{self._loaded_model.id}' -> '{model.id}'")
                self.engine.unload()
                self._loaded_model = None

            self._set_state(ModelState.loading())
            try:
                self.engine.load(self.model_dir(model))
            except ModelLoadError as e:
                self._loaded_model = None
                self._fail(str(e))
                raise

            self._loaded_model = model
            self._set_state(ModelState.ready())

    def unload(self) -> None:
        """Release the loaded model. The model file stays on disk."""
        with self._lock:
            self._unload_locked()

    def _unload_locked(self) -> None:
        self.engine.unload()
        self._loaded_model = None
        if self._state.status is not ModelStatus.NOT_DOWNLOADED:
            if self._state.status in (ModelStatus.READY, ModelStatus.ERROR):
                self._set_state(ModelState.not_downloaded())
            else:
                self._fail("Model unloaded during transition")

    def delete(self, model: ModelDescriptor) -> None:
        """Remove a downloaded model, unloading it first if it is loaded."""
        with self._lock:
            if self._loaded_model == model:
                self._unload_locked()
            target_dir = self.model_dir(model)
            if target_dir.exists():
                shutil.rmtree(target_dir)
                logger.info(f"Deleted model '{model.id}' from {target_dir}")


def _content_length(response: requests.Response) -> int:
    """Total size from the Content-Length header, or 0 when unknown."""
    value = response.headers.get("Content-Length")
    try:
        length = int(value) if value is not None else 0
    except ValueError:
        return 0
    return max(length, 0)
