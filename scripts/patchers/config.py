"""
config.py — Fixed layout and run configuration for the bundle patcher.

Everything the patch run needs to know about the host (invoking user, tmp
root, codesign path) is resolved once here and passed around explicitly.
"""

import getpass
import grp
import os
import pwd
from dataclasses import dataclass

from .errors import ConfigError


DEFAULT_APP_PATH = "/Applications/Cursor.app"
DEFAULT_TMP_ROOT = "/tmp"
STAGING_PREFIX = "cursor_reset"
CODESIGN = "/usr/bin/codesign"

# Packaged scripts that carry the machine-id lookup.
TARGET_FILES = (
    "Contents/Resources/app/out/main.js",
    "Contents/Resources/app/out/vs/code/node/cliProcessMain.js",
)

# Helper apps stripped individually before the deep re-sign.
HELPER_BUNDLES = (
    "Contents/Frameworks/Cursor Helper.app",
    "Contents/Frameworks/Cursor Helper (GPU).app",
    "Contents/Frameworks/Cursor Helper (Plugin).app",
    "Contents/Frameworks/Cursor Helper (Renderer).app",
)

PATCH_MARKER = b"return crypto.randomUUID()"
PATCH_FRAGMENT = b"return crypto.randomUUID();"
ANCHOR_TOKEN = b"switch"
SCOPE_TOKEN = b"IOPlatformUUID"

UPDATER_CACHE = "Library/Application Support/Caches/cursor-updater"


@dataclass(frozen=True)
class PatchConfig:
    """Run configuration, built once and threaded through every step."""

    app_path: str = DEFAULT_APP_PATH
    tmp_root: str = DEFAULT_TMP_ROOT
    staging_prefix: str = STAGING_PREFIX
    codesign: str = CODESIGN

    target_files: tuple = TARGET_FILES
    helper_bundles: tuple = HELPER_BUNDLES
    marker: bytes = PATCH_MARKER
    fragment: bytes = PATCH_FRAGMENT
    anchor: bytes = ANCHOR_TOKEN
    scope: bytes = SCOPE_TOKEN

    user: str = ""
    home: str = ""
    uid: int = -1
    gid: int = -1
    group: str = "staff"
    mode: int = 0o755

    sign_attempts: int = 3
    sign_delay: float = 1.0
    verbose: bool = True

    @property
    def updater_path(self):
        return os.path.join(self.home, UPDATER_CACHE)

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """Resolve the invoking (non-elevated) user and build a config.

        Under sudo the real user comes from SUDO_USER; otherwise the
        current login is used. uid/gid fall back to the running process
        when the account or the group cannot be looked up.
        """
        env = os.environ if environ is None else environ
        if os.geteuid() == 0 and env.get("SUDO_USER"):
            user = env["SUDO_USER"]
        else:
            user = env.get("USER") or _login_name()
        if not user:
            raise ConfigError("Unable to determine the invoking user")

        group = overrides.pop("group", "staff")
        try:
            pw = pwd.getpwnam(user)
            uid, gid, home = pw.pw_uid, pw.pw_gid, pw.pw_dir
        except KeyError:
            uid, gid = os.getuid(), os.getgid()
            home = env.get("HOME", os.path.expanduser("~"))
        try:
            gid = grp.getgrnam(group).gr_gid
        except KeyError:
            pass

        return cls(user=user, home=home, uid=uid, gid=gid, group=group,
                   **overrides)


def _login_name():
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""
