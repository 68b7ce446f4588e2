import os
import stat

import pytest

from conftest import CLI_JS, MAIN_JS, NO_SCOPE_JS
from patchers.script import (
    ScriptPatcher,
    find_insertion_point,
    insert_fragment,
    write_replace,
)


FRAGMENT = b"return crypto.randomUUID();"


def test_insertion_point_is_last_switch_before_scope():
    off = find_insertion_point(MAIN_JS)
    assert off == MAIN_JS.index(b"switch(process.platform)")
    assert off > MAIN_JS.index(b"switch(t)")


def test_example_from_case_switch_block():
    data = b"...case 'x': switch(a){...IOPlatformUUID...}..."
    off = find_insertion_point(data)
    assert off == data.index(b"switch")
    out = insert_fragment(data, off)
    assert out == b"...case 'x': " + FRAGMENT + b"\nswitch(a){...IOPlatformUUID...}..."


def test_switch_after_scope_is_ignored():
    data = b"x=IOPlatformUUID;switch(y){}"
    assert find_insertion_point(data) == -1


def test_missing_scope_token():
    assert find_insertion_point(NO_SCOPE_JS) == -1


def test_only_first_scope_occurrence_counts():
    data = b"switch(a){IOPlatformUUID} switch(b){IOPlatformUUID}"
    assert find_insertion_point(data) == 0


def test_apply_inserts_fragment_and_keeps_surrounding_bytes():
    p = ScriptPatcher(MAIN_JS, verbose=False)
    assert not p.is_patched
    assert p.apply() == 1

    off = MAIN_JS.index(b"switch(process.platform)")
    assert p.data[:off] == MAIN_JS[:off]
    assert p.data[off:off + len(FRAGMENT) + 1] == FRAGMENT + b"\n"
    assert p.data[off + len(FRAGMENT) + 1:] == MAIN_JS[off:]
    assert p.patches == [(off, FRAGMENT + b"\n", "fresh identifier")]


def test_apply_on_patched_content_is_noop():
    p = ScriptPatcher(MAIN_JS, verbose=False)
    p.apply()
    again = ScriptPatcher(p.data, verbose=False)
    assert again.is_patched
    assert again.apply() == 0
    assert again.data == p.data


def test_apply_without_insertion_point():
    p = ScriptPatcher(NO_SCOPE_JS, verbose=False)
    assert p.apply() == 0
    assert p.data == NO_SCOPE_JS


def test_apply_logs_when_verbose(capsys):
    ScriptPatcher(CLI_JS, label="cli.js").apply()
    out = capsys.readouterr().out
    assert "[+] cli.js: inserted 28 bytes" in out


def test_save_replaces_file_and_keeps_mode(tmp_path):
    path = tmp_path / "main.js"
    path.write_bytes(MAIN_JS)
    os.chmod(path, 0o755)

    p = ScriptPatcher.from_file(str(path), verbose=False)
    assert p.label == "main.js"
    p.apply()
    p.save(str(path))

    assert path.read_bytes() == p.data
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o755
    assert not (tmp_path / "main.js.tmp").exists()


def test_write_replace_refuses_empty_content(tmp_path):
    path = tmp_path / "main.js"
    path.write_bytes(MAIN_JS)
    with pytest.raises(OSError):
        write_replace(str(path), b"")
    assert path.read_bytes() == MAIN_JS
    assert not (tmp_path / "main.js.tmp").exists()


def test_write_replace_removes_temp_file_on_failure(tmp_path, monkeypatch):
    path = tmp_path / "main.js"
    path.write_bytes(MAIN_JS)

    def full(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("patchers.script.shutil.copymode", full)
    with pytest.raises(OSError):
        write_replace(str(path), b"patched")
    assert path.read_bytes() == MAIN_JS
    assert os.listdir(tmp_path) == ["main.js"]
