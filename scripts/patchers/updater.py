"""
updater.py — Lock out the application's auto-updater.

The updater caches downloads under a fixed path in the user's Library.
Replacing that path with an empty read-only file stops it from staging
updates that would overwrite the patched bundle. Deleting the file
re-enables updates.
"""

import os
import shlex
import shutil

from .errors import UpdaterLockFailed


def disable_auto_update(config):
    path = config.updater_path
    q = shlex.quote(path)
    commands = [f"sudo rm -rf {q} && sudo touch {q} && sudo chmod 444 {q}"]

    if config.verbose:
        print(f"[*] Disabling auto-update: {path}")
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb"):
            pass
        os.chmod(path, 0o444)
        if config.uid >= 0:
            os.chown(path, config.uid, config.gid)
    except OSError as e:
        raise UpdaterLockFailed(f"Unable to lock updater path {path}: {e}",
                                commands, path=path) from e

    if config.verbose:
        print("  [+] Auto-update disabled")
        print(f"  To restore updates, delete: {path}")
    return path
