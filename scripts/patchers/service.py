"""
service.py — Patch the identifier call path in an installed bundle and
re-sign it.

Pipeline (per run):
    Start -> Checked -> Staged -> SignatureStripped -> ContentPatched
          -> Signed -> Installed

All work happens on a copy under the tmp root; the installed bundle is
only touched by the final remove+move, and is restored from the backup
copy if that swap fails. A run against an already patched bundle is a
no-op: no copy, no backup, no signing.
"""

import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime

from .bundle import Bundle, normalize_tree
from .codesign import Codesign
from .errors import (
    BundleNotFound,
    InstallFailed,
    MissingTargetFiles,
    NoFilesPatched,
    SigningFailed,
    StagingFailed,
    WorkingCopyFailed,
)
from .retry import RetryPolicy
from .script import ScriptPatcher, find_insertion_point


class State:
    START = "Start"
    CHECKED = "Checked"
    STAGED = "Staged"
    SIGNATURE_STRIPPED = "SignatureStripped"
    CONTENT_PATCHED = "ContentPatched"
    SIGNED = "Signed"
    INSTALLED = "Installed"
    ROLLED_BACK = "RolledBack"
    ABORTED = "Aborted"


@dataclass
class PatchResult:
    changed: bool
    state: str
    patched: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    strip_results: list = field(default_factory=list)
    attempts: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


@dataclass
class TargetStatus:
    path: str
    exists: bool
    patched: bool = False
    insertion_point: int = -1


@dataclass
class BundleStatus:
    root: str
    version: str
    identifier: str
    signed: object
    helpers: list
    targets: list

    @property
    def needs_patch(self):
        return any(t.exists and not t.patched for t in self.targets)


@dataclass
class _Staging:
    work_dir: str
    app: str
    backup: str


class PatchAndResignService:
    def __init__(self, config, codesign=None, sleep=time.sleep,
                 clock=datetime.now):
        self.config = config
        self.codesign = codesign or Codesign(config.codesign)
        self.retry = RetryPolicy(config.sign_attempts, config.sign_delay,
                                 sleep=sleep)
        self._clock = clock
        self.state = State.START
        self.warnings = []

    def _log(self, msg):
        if self.config.verbose:
            print(msg, flush=True)

    def _warn(self, msg):
        self.warnings.append(msg)
        self._log(f"  [!] {msg}")

    def _bundle(self, bundle_path):
        return Bundle(bundle_path or self.config.app_path,
                      self.config.target_files, self.config.helper_bundles)

    def _patcher(self, path, label):
        c = self.config
        return ScriptPatcher.from_file(path, label=label, marker=c.marker,
                                       fragment=c.fragment, anchor=c.anchor,
                                       scope=c.scope, verbose=c.verbose)

    # ── read-only report ─────────────────────────────────────────

    def inspect_bundle(self, bundle_path=None):
        bundle = self._bundle(bundle_path)
        if not bundle.exists():
            raise BundleNotFound(f"Bundle not found: {bundle.root}",
                                 path=bundle.root, state=State.ABORTED)

        targets = []
        for rel in bundle.target_files:
            p = bundle.path(rel)
            if not os.path.isfile(p):
                targets.append(TargetStatus(rel, False))
                continue
            with open(p, "rb") as f:
                data = f.read()
            targets.append(TargetStatus(
                rel, True,
                patched=self.config.marker in data,
                insertion_point=find_insertion_point(
                    data, self.config.anchor, self.config.scope),
            ))

        return BundleStatus(bundle.root, bundle.version, bundle.identifier,
                            bundle.signature_state(), bundle.sub_components(),
                            targets)

    # ── patch run ────────────────────────────────────────────────

    def patch_bundle(self, bundle_path=None):
        self.state = State.START
        self.warnings = []
        bundle = self._bundle(bundle_path)

        self._log(f"[*] Bundle: {bundle.root}")
        if not bundle.exists():
            self.state = State.ABORTED
            raise BundleNotFound(
                f"Bundle not found, verify the install path: {bundle.root}",
                path=bundle.root, state=self.state)

        pending = self._check(bundle)
        if not pending:
            self._log("[+] All target files already patched, nothing to do")
            return PatchResult(changed=False, state=self.state,
                               warnings=self.warnings)

        staging = self._stage(bundle)
        try:
            strip_results = self._strip(staging.app)
            patched, skipped = self._patch_targets(staging, pending)
        except NoFilesPatched:
            self._discard(staging.work_dir, staging.backup)
            raise
        except OSError as e:
            self._discard(staging.work_dir, staging.backup)
            self.state = State.ROLLED_BACK
            raise WorkingCopyFailed(
                f"Unable to prepare working copy {staging.app}: {e}",
                path=getattr(e, "filename", None) or staging.app,
                state=self.state) from e

        attempts = self._sign(bundle, staging)
        self._install(bundle, staging)

        self._log(f"[+] {len(patched)} file(s) patched, bundle re-signed and "
                  f"installed at {bundle.root}")
        return PatchResult(changed=True, state=self.state, patched=patched,
                           skipped=skipped, strip_results=strip_results,
                           attempts=attempts, warnings=self.warnings)

    def _check(self, bundle):
        """Return the target paths that still need the patch."""
        missing = bundle.missing_targets()
        if missing:
            for rel in missing:
                self._log(f"  [-] Missing: {rel}")
            self.state = State.ABORTED
            raise MissingTargetFiles(
                f"{len(missing)} target file(s) missing in {bundle.root}, "
                f"verify the installation",
                missing, path=bundle.root, state=self.state)

        pending = []
        for rel in bundle.target_files:
            try:
                with open(bundle.path(rel), "rb") as f:
                    done = self.config.marker in f.read()
            except OSError as e:
                self.state = State.ABORTED
                raise MissingTargetFiles(
                    f"Unable to read target {rel}: {e.strerror or e}",
                    [rel], path=bundle.path(rel), state=self.state) from e
            self._log(f"  {'[+] Already patched' if done else '[*] Needs patch'}"
                      f": {rel}")
            if not done:
                pending.append(rel)

        self.state = State.CHECKED
        return pending

    def _stage(self, bundle):
        c = self.config
        ts = self._clock().strftime("%Y%m%d_%H%M%S")
        work_dir = os.path.join(c.tmp_root, f"{c.staging_prefix}_{ts}")
        staging = _Staging(work_dir, os.path.join(work_dir, bundle.name),
                           os.path.join(c.tmp_root,
                                        f"{bundle.name}.backup_{ts}"))

        self._log(f"[*] Staging working copy in {work_dir}")
        try:
            for stale in (staging.work_dir, staging.backup):
                if os.path.lexists(stale):
                    self._log(f"  [!] Removing stale {stale}")
                    shutil.rmtree(stale)
            os.makedirs(work_dir)
            shutil.copytree(bundle.root, staging.backup, symlinks=True)
            shutil.copytree(bundle.root, staging.app, symlinks=True)
        except (OSError, shutil.Error) as e:
            self._discard(staging.work_dir, staging.backup)
            self.state = State.ABORTED
            raise StagingFailed(f"Unable to stage {bundle.root}: {e}",
                                path=work_dir, state=self.state) from e

        self._log(f"  [+] Backup: {staging.backup}")
        for w in normalize_tree(work_dir, c.uid, c.gid, c.mode):
            self._warn(w)
        self.state = State.STAGED
        return staging

    def _strip(self, app):
        self._log("[*] Removing existing signatures")
        results = [self.codesign.remove_signature(app)]
        for rel in self.config.helper_bundles:
            component = os.path.join(app, rel)
            if not os.path.isdir(component):
                self._warn(f"Component not present, skipped: {rel}")
                continue
            results.append(self.codesign.remove_signature(component))

        for r in results:
            if r.ok:
                self._log(f"  [+] Stripped {os.path.relpath(r.component, os.path.dirname(app))}")
            else:
                self._warn(f"Failed to remove signature from {r.component}"
                           + (f": {r.message}" if r.message else ""))
        self.state = State.SIGNATURE_STRIPPED
        return results

    def _patch_targets(self, staging, pending):
        self._log("[*] Patching target files")
        patched, skipped = [], []
        for rel in pending:
            path = os.path.join(staging.app, rel)
            p = self._patcher(path, rel)
            if not p.apply():
                self._warn(f"No insertion point in {rel}, left unpatched")
                skipped.append(rel)
                continue
            try:
                p.save(path)
            except OSError as e:
                self._warn(f"Write failed for {rel}: {e}")
                skipped.append(rel)
                continue
            patched.append(rel)

        if not patched:
            self.state = State.ROLLED_BACK
            raise NoFilesPatched("Failed to patch any target file",
                                 skipped, path=staging.app, state=self.state)
        self.state = State.CONTENT_PATCHED
        return patched, skipped

    def _sign(self, bundle, staging):
        attempts = []

        def attempt(n):
            self._log(f"[*] Signing (attempt {n}/{self.retry.max_attempts})")
            a = self.codesign.sign_and_verify(staging.app, n)
            attempts.append(a)
            if a.ok:
                self._log("  [+] Signature verified")
            else:
                what = "verification" if a.signed else "signing"
                self._log(f"  [-] {what} failed")
                if a.output:
                    self._log("      " + a.output.replace("\n", "\n      "))
            return a.ok

        ok, _ = self.retry.run(attempt)
        if ok:
            self.state = State.SIGNED
            return attempts

        self._discard(staging.backup)
        self.state = State.ROLLED_BACK
        commands = self.codesign.manual_commands(
            staging.app, os.path.dirname(bundle.root))
        self._log(f"[-] Signing failed after {len(attempts)} attempts. "
                  f"Finish manually:")
        for cmd in commands:
            self._log(f"    {cmd}")
        self._log(f"[*] Working copy kept at: {staging.work_dir}")
        raise SigningFailed(
            f"Failed to sign {staging.app} after {len(attempts)} attempts",
            attempts, commands, path=staging.work_dir, state=self.state)

    def _install(self, bundle, staging):
        self._log(f"[*] Installing patched bundle to {bundle.root}")
        try:
            shutil.rmtree(bundle.root)
            shutil.move(staging.app, bundle.root)
        except (OSError, shutil.Error) as e:
            self._log(f"  [-] Install failed ({e}), restoring original")
            restored = self._restore(staging.backup, bundle.root)
            if restored:
                self._discard(staging.work_dir, staging.backup)
            else:
                self._discard(staging.work_dir)
                self._log(f"  [-] Restore failed, backup kept at "
                          f"{staging.backup}")
            self.state = State.ROLLED_BACK
            raise InstallFailed(f"Unable to replace {bundle.root}: {e}",
                                restored=restored, path=bundle.root,
                                state=self.state) from e

        c = self.config
        for w in normalize_tree(bundle.root, c.uid, c.gid, c.mode):
            self._warn(w)
        self._discard(staging.work_dir, staging.backup)
        self.state = State.INSTALLED

    def _restore(self, backup, root):
        try:
            if os.path.isdir(root) and not os.path.islink(root):
                shutil.rmtree(root)
            elif os.path.lexists(root):
                os.remove(root)
            shutil.copytree(backup, root, symlinks=True)
        except (OSError, shutil.Error) as e:
            self._log(f"  [-] {e}")
            return False
        c = self.config
        for w in normalize_tree(root, c.uid, c.gid, c.mode):
            self._warn(w)
        self._log(f"  [+] Restored {root} from {backup}")
        return True

    def _discard(self, *paths):
        for p in paths:
            if os.path.lexists(p):
                shutil.rmtree(p, ignore_errors=True)
