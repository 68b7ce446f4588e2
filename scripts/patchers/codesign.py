"""
codesign.py — Strip, ad-hoc sign and verify through /usr/bin/codesign.

The runner is `subprocess.run` by default; tests hand in a fake with the
same signature.
"""

import shlex
import subprocess
from dataclasses import dataclass


@dataclass
class StripResult:
    component: str
    ok: bool
    message: str = ""


@dataclass
class SigningAttempt:
    attempt: int
    signed: bool
    verified: bool
    output: str = ""

    @property
    def ok(self):
        return self.signed and self.verified


def decode_clean(b):
    if not b:
        return ""
    if isinstance(b, bytes):
        b = b.decode("utf-8", errors="replace")
    return b.strip()


class Codesign:
    SIGN_FLAGS = ("--sign", "-", "--force", "--deep",
                  "--preserve-metadata=entitlements,identifier,flags")

    def __init__(self, tool="/usr/bin/codesign", runner=subprocess.run):
        self.tool = tool
        self._run = runner

    def _call(self, *args):
        try:
            r = self._run([self.tool, *args], capture_output=True)
        except OSError as e:
            return False, str(e)
        out = "\n".join(filter(None, (decode_clean(r.stdout),
                                      decode_clean(r.stderr))))
        return r.returncode == 0, out

    def remove_signature(self, path):
        ok, out = self._call("--remove-signature", str(path))
        return StripResult(str(path), ok, out)

    def sign_adhoc(self, path):
        return self._call(*self.SIGN_FLAGS, str(path))

    def verify(self, path):
        return self._call("--verify", "-vvvv", str(path))

    def sign_and_verify(self, path, attempt=1):
        """One SigningAttempt: sign, and verify only if signing succeeded."""
        signed, out = self.sign_adhoc(path)
        if not signed:
            return SigningAttempt(attempt, False, False, out)
        verified, vout = self.verify(path)
        return SigningAttempt(attempt, True, verified,
                              "\n".join(filter(None, (out, vout))))

    def manual_commands(self, staged_app, install_dir):
        """Commands an operator can run to finish by hand."""
        app = shlex.quote(str(staged_app))
        return [
            f"sudo {self.tool} --sign - --force --deep {app}",
            f"sudo cp -R {app} {shlex.quote(str(install_dir))}/",
        ]
