"""Bundle identity patchers: script patch, codesign wrapper, patch service."""

from .config import PatchConfig
from .errors import (
    BundleNotFound,
    ConfigError,
    InstallFailed,
    MissingTargetFiles,
    NoFilesPatched,
    PatchError,
    SigningFailed,
    StagingFailed,
    UpdaterLockFailed,
    WorkingCopyFailed,
)
from .service import PatchAndResignService, PatchResult, State
