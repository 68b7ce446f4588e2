#!/usr/bin/env python3
"""
bundle_patch.py — Reset the machine identifier path of an installed app bundle.

The application must not be running; stop it before invoking `patch`.

Commands:
    patch [--app PATH] [--tmp DIR] [--quiet] [--force]
        Insert the fresh-identifier fragment into the packaged scripts,
        strip and ad-hoc re-sign the bundle, and swap it into place.
        Re-running on a patched bundle does nothing.

    status [--app PATH]
        Report version, signature state and per-file patch state.

    disable-updates [--force]
        Replace the updater cache with a read-only empty file.

Usage:
    sudo python3 bundle_patch.py patch
"""

import argparse
import dataclasses
import os
import platform
import sys

from patchers.config import DEFAULT_APP_PATH, DEFAULT_TMP_ROOT, PatchConfig
from patchers.errors import PatchError, SigningFailed, UpdaterLockFailed
from patchers.service import PatchAndResignService
from patchers.updater import disable_auto_update


def check_environment(force=False):
    """Return an error string, or None when patching may proceed."""
    if force:
        return None
    if platform.system() != "Darwin":
        return "This tool only supports macOS (use --force to override)"
    if os.geteuid() != 0:
        return "Please run with sudo (use --force to override)"
    return None


def cmd_patch(config):
    service = PatchAndResignService(config)
    try:
        result = service.patch_bundle()
    except SigningFailed as e:
        print(f"[-] {e}")
        print("[*] Run these commands to finish by hand:")
        for cmd in e.commands:
            print(f"    {cmd}")
        return 1
    except PatchError as e:
        print(f"[-] {e}")
        return 1

    if result.warnings:
        print(f"[!] {len(result.warnings)} warning(s):")
        for w in result.warnings:
            print(f"    {w}")
    if not result.changed:
        print("[+] Bundle already patched")
    else:
        print(f"[+] Patched: {', '.join(result.patched)}")
        if result.skipped:
            print(f"[!] Left unpatched: {', '.join(result.skipped)}")
        print(f"[+] Signed after {len(result.attempts)} attempt(s)")
        print("[*] Restart the application to pick up the new identifier")
    return 0


def cmd_status(config):
    service = PatchAndResignService(config)
    try:
        st = service.inspect_bundle()
    except PatchError as e:
        print(f"[-] {e}")
        return 1

    signed = {True: "signed", False: "unsigned", None: "unknown"}[st.signed]
    print(f"[*] Bundle:     {st.root}")
    print(f"[*] Identifier: {st.identifier or '?'}")
    print(f"[*] Version:    {st.version or '?'}")
    print(f"[*] Signature:  {signed}")
    print(f"[*] Helpers:    {len(st.helpers)} present")
    for t in st.targets:
        if not t.exists:
            print(f"  [-] {t.path}: missing")
        elif t.patched:
            print(f"  [+] {t.path}: patched")
        elif t.insertion_point < 0:
            print(f"  [!] {t.path}: unpatched, no insertion point")
        else:
            print(f"  [*] {t.path}: unpatched, insert at 0x{t.insertion_point:X}")
    return 0


def cmd_disable_updates(config):
    try:
        disable_auto_update(config)
    except UpdaterLockFailed as e:
        print(f"[-] {e}")
        print("[*] Run manually:")
        for cmd in e.commands:
            print(f"    {cmd}")
        return 1
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description="Reset the machine identifier path of an installed app bundle")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("patch", help="patch, re-sign and install the bundle")
    p.add_argument("--app", default=DEFAULT_APP_PATH, help="bundle path")
    p.add_argument("--tmp", default=DEFAULT_TMP_ROOT,
                   help="directory for the working copy and backup")
    p.add_argument("--quiet", action="store_true", help="only print the summary")
    p.add_argument("--force", action="store_true",
                   help="skip the macOS/root checks")

    s = sub.add_parser("status", help="report the bundle's patch state")
    s.add_argument("--app", default=DEFAULT_APP_PATH, help="bundle path")

    u = sub.add_parser("disable-updates", help="lock out the auto-updater")
    u.add_argument("--force", action="store_true",
                   help="skip the macOS/root checks")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = PatchConfig.from_env()
    except PatchError as e:
        print(f"[-] {e}")
        return 1

    if args.command == "status":
        return cmd_status(dataclasses.replace(config, app_path=args.app))

    problem = check_environment(args.force)
    if problem:
        print(f"[-] {problem}")
        return 1

    if args.command == "patch":
        return cmd_patch(dataclasses.replace(
            config, app_path=args.app, tmp_root=args.tmp,
            verbose=not args.quiet))
    return cmd_disable_updates(config)


if __name__ == "__main__":
    sys.exit(main())
