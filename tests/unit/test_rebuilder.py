from __future__ import annotations

from pathlib import Path

import pytest

from patchstack.applier import PatchApplier
from patchstack.errors import RebuildError
from patchstack.rebuilder import PatchRebuilder, RebuildOptions
from patchstack.tree import DirectoryTree, ExclusionRules


def _tree(root: Path, files: dict[str, str | bytes]) -> DirectoryTree:
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return DirectoryTree(root)


def test_edited_output_becomes_a_stack_that_reapplies(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"src/Foo.java": "class Foo {}\n", "src/Gone.java": "class Gone {}\n"})
    working = _tree(
        tmp_path / "work",
        {"src/Foo.java": "class Foo {\n    void bar() {}\n}\n", "src/New.java": "class New {}\n"},
    )

    stack = PatchRebuilder().rebuild(base, working, target="api")

    assert stack.names == ("src/Foo.java.patch", "src/Gone.java.patch", "src/New.java.patch")
    assert [entry.diffs[0].change_type for entry in stack] == ["modify", "delete", "add"]
    result = PatchApplier().apply(base, stack)
    assert result.tree.files() == working.files()
    for path in working.files():
        assert result.tree.read(path) == working.read(path)


def test_unchanged_output_rebuilds_to_empty_stack(tmp_path: Path) -> None:
    files = {"a.txt": "a\n", "b/c.txt": "c\n"}
    base = _tree(tmp_path / "base", files)
    working = _tree(tmp_path / "work", files)

    assert len(PatchRebuilder().rebuild(base, working)) == 0


def test_filtering_drops_header_only_entries_for_previously_patched_files(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"empty.txt": "", "real.txt": "a\n"})
    working = _tree(tmp_path / "work", {"empty.txt": "", "real.txt": "b\n"})
    previous = PatchRebuilder().rebuild(
        base,
        _tree(tmp_path / "before", {"empty.txt": "x\n", "real.txt": "b\n"}),
    )
    assert previous.names == ("empty.txt.patch", "real.txt.patch")

    filtered = PatchRebuilder().rebuild(base, working, previous=previous)
    unfiltered = PatchRebuilder().rebuild(
        base,
        working,
        options=RebuildOptions(filter_patches=False),
        previous=previous,
    )

    assert filtered.names == ("real.txt.patch",)
    assert unfiltered.names == ("empty.txt.patch", "real.txt.patch")
    assert unfiltered.entries[0].is_empty


def test_excluded_paths_never_produce_entries(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"README.md": "# Upstream\n", "src/Foo.java": "class Foo {}\n"})
    working = _tree(tmp_path / "work", {"README.md": "# Fork\n", "src/Foo.java": "class Foo { }\n"})

    stack = PatchRebuilder().rebuild(base, working, ExclusionRules.from_patterns(["README.md"]))

    assert stack.names == ("src/Foo.java.patch",)


def test_pending_reject_files_block_the_rebuild(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"Foo.java": "class Foo {}\n"})
    working = _tree(tmp_path / "work", {"Foo.java": "class Foo {}\n", "Foo.java.rej": "@@ -1 +1 @@\n"})

    with pytest.raises(RebuildError, match="Foo.java.rej") as excinfo:
        PatchRebuilder().rebuild(base, working, target="api")

    assert excinfo.value.details["rejects"] == ["Foo.java.rej"]
    assert excinfo.value.target == "api"


def test_binary_changes_are_refused(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"logo.png": b"\x89PNG\x00\x01"})
    working = _tree(tmp_path / "work", {"logo.png": b"\x89PNG\x00\x02"})

    with pytest.raises(RebuildError, match="Binary file logo.png"):
        PatchRebuilder().rebuild(base, working)


def test_missing_working_tree_is_an_error(tmp_path: Path) -> None:
    base = _tree(tmp_path / "base", {"a.txt": "a\n"})

    with pytest.raises(RebuildError, match="does not exist"):
        PatchRebuilder().rebuild(base, DirectoryTree(tmp_path / "missing"))


def test_rebuild_commits_requires_a_repository(tmp_path: Path) -> None:
    with pytest.raises(RebuildError):
        PatchRebuilder().rebuild_commits(tmp_path / "nowhere")

    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(RebuildError):
        PatchRebuilder().rebuild_commits(plain)
