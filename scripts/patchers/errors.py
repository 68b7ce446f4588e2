"""
errors.py — Failure kinds raised by the bundle patcher.

Every PatchError records where the run ended (Aborted or RolledBack), so
the caller can tell whether a backup existed when it stopped.
"""


class PatchError(RuntimeError):
    """Base class; `state` is the terminal state of the run."""

    def __init__(self, message, path=None, state=None):
        super().__init__(message)
        self.path = path
        self.state = state


class ConfigError(PatchError):
    pass


class BundleNotFound(PatchError):
    pass


class MissingTargetFiles(PatchError):
    def __init__(self, message, missing, path=None, state=None):
        super().__init__(message, path=path, state=state)
        self.missing = list(missing)


class StagingFailed(PatchError):
    pass


class NoFilesPatched(PatchError):
    def __init__(self, message, skipped=(), path=None, state=None):
        super().__init__(message, path=path, state=state)
        self.skipped = list(skipped)


class SigningFailed(PatchError):
    """Signing gave up; the staged bundle is left on disk for inspection."""

    def __init__(self, message, attempts=(), commands=(), path=None,
                 state=None):
        super().__init__(message, path=path, state=state)
        self.attempts = list(attempts)
        self.commands = list(commands)


class InstallFailed(PatchError):
    def __init__(self, message, restored=False, path=None, state=None):
        super().__init__(message, path=path, state=state)
        self.restored = restored


class UpdaterLockFailed(PatchError):
    def __init__(self, message, commands=(), path=None, state=None):
        super().__init__(message, path=path, state=state)
        self.commands = list(commands)


class WorkingCopyFailed(PatchError):
    """An I/O error on the staged copy before signing; staging discarded."""
