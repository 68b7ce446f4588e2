"""
bundle.py — Read-side model of an installed .app bundle.

Signature state is read straight from the main executable: a slice is
signed when its load commands include LC_CODE_SIGNATURE. Universal
binaries are signed only when every slice is.
"""

import os
import plistlib
import struct

from .config import HELPER_BUNDLES, TARGET_FILES


MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF
LC_CODE_SIGNATURE = 0x1D


# ══════════════════════════════════════════════════════════════════
# Mach-O helpers
# ══════════════════════════════════════════════════════════════════


def get_fat_slices(data):
    """Return list of (offset, size) slices; [(0, len(data))] when thin.

    A universal header cut short before its arch table yields [].
    """
    if len(data) < 8:
        return [(0, len(data))]
    magic = struct.unpack_from(">I", data, 0)[0]
    if magic == FAT_MAGIC:
        nfat = struct.unpack_from(">I", data, 4)[0]
        if 8 + nfat * 20 > len(data):
            return []
        return [struct.unpack_from(">II", data, 8 + i * 20 + 8)
                for i in range(nfat)]
    if magic == FAT_MAGIC_64:
        nfat = struct.unpack_from(">I", data, 4)[0]
        if 8 + nfat * 32 > len(data):
            return []
        return [struct.unpack_from(">QQ", data, 8 + i * 32 + 8)
                for i in range(nfat)]
    return [(0, len(data))]


def slice_has_codesig(data, base):
    """True/False for a Mach-O slice at `base`, None if it is not Mach-O."""
    if base + 28 > len(data):
        return None
    magic = struct.unpack_from("<I", data, base)[0]
    if magic == MH_MAGIC_64:
        offset = base + 32  # sizeof(mach_header_64)
    elif magic == MH_MAGIC:
        offset = base + 28  # sizeof(mach_header)
    else:
        return None

    ncmds = struct.unpack_from("<I", data, base + 16)[0]
    for _ in range(ncmds):
        if offset + 8 > len(data):
            break
        cmd, cmdsize = struct.unpack_from("<II", data, offset)
        if cmd == LC_CODE_SIGNATURE:
            return True
        if cmdsize == 0:
            break
        offset += cmdsize
    return False


def macho_is_signed(data):
    states = [slice_has_codesig(data, off) for off, _ in get_fat_slices(data)]
    if not states or any(s is None for s in states):
        return None
    return all(states)


# ══════════════════════════════════════════════════════════════════
# Bundle
# ══════════════════════════════════════════════════════════════════


class Bundle:
    def __init__(self, root, target_files=TARGET_FILES,
                 helper_bundles=HELPER_BUNDLES):
        self.root = os.path.abspath(root)
        self.target_files = tuple(target_files)
        self.helper_bundles = tuple(helper_bundles)
        self._info = None

    @property
    def name(self):
        return os.path.basename(self.root)

    def exists(self):
        return os.path.isdir(self.root)

    def path(self, rel):
        return os.path.join(self.root, rel)

    @property
    def info(self):
        """Parsed Contents/Info.plist, {} when missing or unreadable."""
        if self._info is None:
            plist = self.path("Contents/Info.plist")
            try:
                with open(plist, "rb") as f:
                    self._info = plistlib.load(f)
            except (OSError, plistlib.InvalidFileException, ValueError):
                self._info = {}
        return self._info

    @property
    def version(self):
        return self.info.get("CFBundleShortVersionString", "")

    @property
    def identifier(self):
        return self.info.get("CFBundleIdentifier", "")

    @property
    def executable(self):
        name = self.info.get("CFBundleExecutable")
        if not name:
            return None
        return self.path(os.path.join("Contents/MacOS", name))

    def signature_state(self):
        """True (signed), False (unsigned), None (unknown)."""
        exe = self.executable
        if not exe or not os.path.isfile(exe):
            return None
        with open(exe, "rb") as f:
            return macho_is_signed(f.read())

    def missing_targets(self):
        return [rel for rel in self.target_files
                if not os.path.isfile(self.path(rel))]

    def sub_components(self):
        """Helper bundles actually present in this copy."""
        return [rel for rel in self.helper_bundles
                if os.path.isdir(self.path(rel))]


def normalize_tree(root, uid, gid, mode=0o755):
    """chown/chmod every entry under `root` (like chown -R; chmod -R).

    Symlinks are not followed. Returns a list of warning strings for the
    entries that could not be changed.
    """
    warnings = []

    def fix(p):
        try:
            os.chown(p, uid, gid, follow_symlinks=False)
        except OSError as e:
            warnings.append(f"chown {p}: {e.strerror or e}")
        if not os.path.islink(p):
            try:
                os.chmod(p, mode)
            except OSError as e:
                warnings.append(f"chmod {p}: {e.strerror or e}")

    fix(root)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            fix(os.path.join(dirpath, name))
    return warnings
