"""
script.py — Identifier-call patcher for the packaged JavaScript bundles.

The machine-id lookup is a `switch` over platform keys that reads
IOPlatformUUID on macOS. Inserting an early `return crypto.randomUUID();`
right before that switch makes every call return a fresh identifier.

Anchoring (no fixed offsets):
  - scope:  first occurrence of b"IOPlatformUUID"
  - anchor: last b"switch" that lies wholly before the scope offset
The fragment goes in at the anchor offset; all other bytes are unchanged.
"""

import os
import shutil

from .config import ANCHOR_TOKEN, PATCH_FRAGMENT, PATCH_MARKER, SCOPE_TOKEN


def find_insertion_point(data, anchor=ANCHOR_TOKEN, scope=SCOPE_TOKEN):
    """Return the insertion offset in `data`, or -1 if there is none.

    Only the first scope occurrence is considered. Files with several
    unrelated switch/IOPlatformUUID pairs are patched at the pair closest
    to that first occurrence.
    """
    scope_off = data.find(scope)
    if scope_off < 0:
        return -1
    return data.rfind(anchor, 0, scope_off)


def insert_fragment(data, offset, fragment=PATCH_FRAGMENT):
    return bytes(data[:offset]) + fragment + b"\n" + bytes(data[offset:])


def write_replace(path, data):
    """Write `data` to a sibling temp file, then move it over `path`."""
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        if os.path.getsize(tmp) == 0:
            raise OSError(f"refusing to replace {path} with empty content")
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        if os.path.lexists(tmp):
            os.remove(tmp)
        raise


class ScriptPatcher:
    """Patch one TargetFile in memory; `save()` writes it back."""

    def __init__(self, data, label="script", marker=PATCH_MARKER,
                 fragment=PATCH_FRAGMENT, anchor=ANCHOR_TOKEN,
                 scope=SCOPE_TOKEN, verbose=True):
        self.raw = bytes(data)
        self.data = bytes(data)
        self.label = label
        self.marker = marker
        self.fragment = fragment
        self.anchor = anchor
        self.scope = scope
        self.verbose = verbose
        self.patches = []

    @classmethod
    def from_file(cls, path, **kwargs):
        with open(path, "rb") as f:
            data = f.read()
        kwargs.setdefault("label", os.path.basename(path))
        return cls(data, **kwargs)

    def _log(self, msg):
        if self.verbose:
            print(msg)

    @property
    def is_patched(self):
        return self.marker in self.raw

    def insertion_point(self):
        return find_insertion_point(self.raw, self.anchor, self.scope)

    def apply(self):
        """Return the number of patches applied (0 or 1)."""
        self.patches = []
        if self.is_patched:
            self._log(f"  [!] {self.label}: already patched")
            return 0

        scope_off = self.raw.find(self.scope)
        if scope_off < 0:
            self._log(f"  [-] {self.label}: '{self.scope.decode()}' not found")
            return 0
        off = self.raw.rfind(self.anchor, 0, scope_off)
        if off < 0:
            self._log(f"  [-] {self.label}: no '{self.anchor.decode()}' "
                      f"before 0x{scope_off:X}")
            return 0

        self.patches.append((off, self.fragment + b"\n", "fresh identifier"))
        self.data = insert_fragment(self.raw, off, self.fragment)
        self._log(f"  [+] {self.label}: inserted {len(self.fragment) + 1} "
                  f"bytes at 0x{off:X} (scope at 0x{scope_off:X})")
        return len(self.patches)

    def save(self, path):
        write_replace(path, self.data)
