import hashlib
import os
import plistlib
import struct
import subprocess
from dataclasses import replace

import pytest

from patchers.config import HELPER_BUNDLES, TARGET_FILES, PatchConfig
from patchers.codesign import Codesign
from patchers.service import PatchAndResignService


MAIN_JS = (
    b'"use strict";function a(t){switch(t){case 1:return 2}}'
    b'async function getMachineId(){switch(process.platform){case "darwin":'
    b'return (await exec("ioreg -rd1 -c IOPlatformExpertDevice"))'
    b'.split("IOPlatformUUID")[1];default:return ""}}b();'
)
CLI_JS = (
    b"var x=0;function id(p){switch(p){case 'darwin':"
    b"return ioreg('IOPlatformUUID');}}module.exports=id;"
)
NO_SCOPE_JS = b"function plain(){switch(a){case 1:return 0}}"


def macho(signed=True):
    """Minimal thin arm64 Mach-O header with one filler load command."""
    cmds = struct.pack("<II", 0x2, 24) + b"\x00" * 16
    ncmds = 1
    if signed:
        cmds += struct.pack("<IIII", 0x1D, 16, 0x4000, 0x100)
        ncmds += 1
    hdr = struct.pack("<IiiIIIII", 0xFEEDFACF, 0x0100000C, 0, 2,
                      ncmds, len(cmds), 0, 0)
    return hdr + cmds


def fat(*slices):
    out = struct.pack(">II", 0xCAFEBABE, len(slices))
    off = 0x1000
    body = b""
    for s in slices:
        out += struct.pack(">iiIII", 0x0100000C, 0, off + len(body),
                           len(s), 12)
        body += s + b"\x00" * (0x1000 - len(s))
    return out + b"\x00" * (0x1000 - len(out)) + body


def tree_digest(root):
    """Hash of relative paths, file bytes and symlink targets."""
    h = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(dirnames + filenames):
            p = os.path.join(dirpath, name)
            h.update(os.path.relpath(p, root).encode())
            if os.path.islink(p):
                h.update(b"L" + os.readlink(p).encode())
            elif os.path.isfile(p):
                with open(p, "rb") as f:
                    h.update(b"F" + f.read())
    return h.hexdigest()


@pytest.fixture
def make_bundle(tmp_path):
    def make(main=MAIN_JS, cli=CLI_JS, helpers=HELPER_BUNDLES, signed=True):
        app = tmp_path / "Applications" / "Cursor.app"
        contents = app / "Contents"
        (contents / "MacOS").mkdir(parents=True)
        with open(contents / "Info.plist", "wb") as f:
            plistlib.dump({"CFBundleExecutable": "Cursor",
                           "CFBundleIdentifier": "com.todesktop.cursor",
                           "CFBundleShortVersionString": "0.45.11"}, f)
        (contents / "MacOS" / "Cursor").write_bytes(macho(signed))
        for rel, data in zip(TARGET_FILES, (main, cli)):
            if data is None:
                continue
            p = app / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        for rel in helpers:
            (app / rel / "Contents").mkdir(parents=True)
        fw = contents / "Frameworks"
        fw.mkdir(exist_ok=True)
        (fw / "libffmpeg.dylib").write_bytes(b"\xcf\xfa\xed\xfe")
        os.symlink("libffmpeg.dylib", fw / "libffmpeg.current.dylib")
        return app
    return make


class FakeRunner:
    """Stands in for subprocess.run; pops return codes per operation."""

    def __init__(self, sign=(), verify=(), strip_fail=()):
        self.sign = list(sign)
        self.verify = list(verify)
        self.strip_fail = tuple(strip_fail)
        self.calls = []

    def __call__(self, cmd, capture_output=True):
        self.calls.append(list(cmd))
        rc = 0
        if "--remove-signature" in cmd:
            if self.strip_fail and cmd[-1].endswith(self.strip_fail):
                rc = 1
        elif "--sign" in cmd:
            rc = self.sign.pop(0) if self.sign else 0
        elif "--verify" in cmd:
            rc = self.verify.pop(0) if self.verify else 0
        err = b"" if rc == 0 else b"code object is not signed at all"
        return subprocess.CompletedProcess(cmd, rc, b"", err)

    def count(self, flag):
        return sum(1 for c in self.calls if flag in c)


@pytest.fixture
def tmp_root(tmp_path):
    d = tmp_path / "tmp"
    d.mkdir()
    return d


@pytest.fixture
def config(tmp_root):
    return PatchConfig(tmp_root=str(tmp_root), uid=-1, gid=-1,
                       sign_delay=0, verbose=False)


@pytest.fixture
def make_service(config):
    def make(runner=None, **overrides):
        runner = runner or FakeRunner()
        cfg = config
        if overrides:
            cfg = replace(config, **overrides)
        sleeps = []
        svc = PatchAndResignService(cfg, Codesign("codesign", runner),
                                    sleep=sleeps.append)
        svc.runner = runner
        svc.sleeps = sleeps
        return svc
    return make
