import base64

import pytest

from core import transfer
from core.errors import SandboxViolation
from core.transfer import ManagedRoot


def _tree(root):
    (root / "pkg").mkdir(parents=True)
    (root / "plugin.json").write_text('{"name": "demo"}')
    (root / "pkg" / "mod.py").write_text("X = 1\n")
    (root / "__pycache__").mkdir()
    (root / "__pycache__" / "mod.cpython.pyc").write_bytes(b"\x00")
    (root / ".env").write_text("SECRET=1")
    return root


def test_collect_files_uses_forward_slashes_and_skips_ignored(tmp_path):
    src = _tree(tmp_path / "src")
    entries = transfer.collect_files(str(src))
    paths = sorted(e["path"] for e in entries)
    assert paths == ["pkg/mod.py", "plugin.json"]
    mod = next(e for e in entries if e["path"] == "pkg/mod.py")
    assert base64.b64decode(mod["content"]) == b"X = 1\n"

    prefixed = transfer.prefix_entries(entries, "demo/")
    assert sorted(e["path"] for e in prefixed) == ["demo/pkg/mod.py", "demo/plugin.json"]


def test_replace_tree_removes_stale_files(tmp_path):
    src = _tree(tmp_path / "src")
    dest = tmp_path / "root" / "demo"
    dest.mkdir(parents=True)
    (dest / "stale.py").write_text("old")
    count = transfer.replace_tree(str(src), str(dest))
    assert count == 2
    assert not (dest / "stale.py").exists()
    assert (dest / "pkg" / "mod.py").read_text() == "X = 1\n"
    assert not (dest / "__pycache__").exists()


def test_managed_root_resolve_confines_paths(tmp_path):
    root = ManagedRoot(str(tmp_path))
    assert root.resolve("demo/main.py") == str(tmp_path.resolve() / "demo" / "main.py")
    for bad in ["../x", "/etc/passwd", "", "demo/../../x", "."]:
        with pytest.raises(SandboxViolation):
            root.resolve(bad)


def test_write_files_validates_everything_first(tmp_path):
    root = ManagedRoot(str(tmp_path))
    good = {"path": "demo/a.txt", "content": base64.b64encode(b"a").decode()}
    bad = {"path": "demo/b.txt", "content": "***not base64***"}
    with pytest.raises(ValueError):
        root.write_files([good, bad])
    assert not (tmp_path / "demo").exists()

    assert root.write_files([good, {"path": "demo/b.txt", "content": "plain", "encoding": "utf-8"}]) == 2
    assert (tmp_path / "demo" / "b.txt").read_text() == "plain"


def test_transfer_keeps_build_dirs_the_watcher_skips(tmp_path):
    from client.watcher import IGNORED_DIRS

    assert transfer.IGNORED_SEGMENTS <= IGNORED_DIRS
    assert IGNORED_DIRS - transfer.IGNORED_SEGMENTS == {"dist", "build"}

    (tmp_path / "webui" / "dist").mkdir(parents=True)
    (tmp_path / "webui" / "dist" / "index.html").write_text("<html></html>")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    paths = [entry["path"] for entry in transfer.collect_files(str(tmp_path))]
    assert paths == ["webui/dist/index.html"]
