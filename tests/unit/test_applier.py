from __future__ import annotations

from pathlib import Path

import pytest

from patchstack.applier import ApplyOptions, PatchApplier, apply_hunks
from patchstack.errors import PatchApplyError
from patchstack.model import ApplyStatus
from patchstack.stack import PatchEntry, PatchStack
from patchstack.tools.diff import generate_file_diff, split_lines
from patchstack.tree import DirectoryTree, ExclusionRules


def _tree(root: Path, files: dict[str, str]) -> DirectoryTree:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return DirectoryTree(root)


def _entry(name: str, *changes: tuple[str, str | None, str | None]) -> PatchEntry:
    diffs = [
        generate_file_diff(
            path,
            old.encode() if old is not None else None,
            new.encode() if new is not None else None,
        )
        for path, old, new in changes
    ]
    return PatchEntry.compose(name, diffs)


def _numbered(count: int) -> str:
    return "".join(f"line {index}\n" for index in range(1, count + 1))


def _five_entry_stack() -> PatchStack:
    entries = []
    for index in range(1, 6):
        path = f"f{index}.txt"
        old = "other\n" if index == 3 else "line\n"
        entries.append(_entry(f"000{index}-Change-f{index}.patch", (path, old, f"line {index}\n")))
    return PatchStack(tuple(entries))


@pytest.fixture()
def five_files(tmp_path: Path) -> DirectoryTree:
    return _tree(tmp_path / "base", {f"f{index}.txt": "line\n" for index in range(1, 6)})


def test_clean_stack_applies_in_order(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"Foo.java": "class Foo {}\n"})
    stack = PatchStack(
        (
            _entry("0001-Body.patch", ("Foo.java", "class Foo {}\n", "class Foo {\n}\n")),
            _entry("0002-Method.patch", ("Foo.java", "class Foo {\n}\n", "class Foo {\n    void bar() {}\n}\n")),
            _entry("0003-New.patch", ("Bar.java", None, "class Bar {}\n")),
        )
    )

    result = PatchApplier().apply(base, stack, target="api")

    assert result.status is ApplyStatus.CLEAN
    assert result.rejects == ()
    assert [step.entry.name for step in result.steps] == list(stack.names)
    assert result.tree.read("Foo.java") == b"class Foo {\n    void bar() {}\n}\n"
    assert result.tree.read("Bar.java") == b"class Bar {}\n"
    assert base.read("Foo.java") == b"class Foo {}\n"


def test_apply_is_deterministic(tmp_path: Path, five_files: DirectoryTree) -> None:
    stack = _five_entry_stack()
    options = ApplyOptions(emit_rejects=True)

    first = PatchApplier().apply(five_files, stack, options)
    second = PatchApplier().apply(five_files, stack, options)

    assert first.tree.changes() == second.tree.changes()
    assert [reject.render() for reject in first.rejects] == [reject.render() for reject in second.rejects]


def test_strict_mode_stops_at_failing_entry(five_files: DirectoryTree) -> None:
    with pytest.raises(PatchApplyError) as excinfo:
        PatchApplier().apply(five_files, _five_entry_stack(), target="files")

    error = excinfo.value
    assert error.target == "files"
    assert error.entry == "0003-Change-f3.patch"
    assert [step.entry.name for step in error.applied_steps] == ["0001-Change-f1.patch", "0002-Change-f2.patch"]
    assert [failure.path for failure in error.failures] == ["f3.txt"]
    assert "@@ -1 +1 @@" in error.describe()
    assert error.details["failures"][0]["reason"] == "context not found"
    assert error.tree is not None
    assert error.tree.read("f2.txt") == b"line 2\n"
    assert error.tree.read("f4.txt") == b"line\n"


def test_lenient_mode_applies_the_rest_and_emits_one_reject(five_files: DirectoryTree) -> None:
    result = PatchApplier().apply(five_files, _five_entry_stack(), ApplyOptions(emit_rejects=True))

    assert result.status is ApplyStatus.PARTIAL
    assert result.failed_entries == ("0003-Change-f3.patch",)
    assert len(result.rejects) == 1
    reject = result.rejects[0]
    assert reject.target_file == "f3.txt"
    assert reject.file_name == "f3.txt.rej"
    assert "-other" in reject.render()
    assert result.tree.read("f3.txt") == b"line\n"
    for index in (1, 2, 4, 5):
        assert result.tree.read(f"f{index}.txt") == f"line {index}\n".encode()


def test_lenient_mode_keeps_successful_hunks_of_a_file(tmp_path: Path) -> None:
    original = _numbered(20)
    edited = original.replace("line 2\n", "line two\n").replace("line 17\n", "line seventeen\n")
    drifted = original.replace("line 16\n", "line sixteen\n")
    base = _tree(tmp_path, {"notes.txt": drifted})
    stack = PatchStack((_entry("0001-Edit.patch", ("notes.txt", original, edited)),))

    result = PatchApplier().apply(base, stack, ApplyOptions(emit_rejects=True))

    content = result.tree.read("notes.txt").decode()
    assert "line two\n" in content
    assert "line seventeen" not in content
    (reject,) = result.rejects
    assert len(reject.hunks) == 1
    assert reject.hunks[0].old_start == 14


def test_hunk_context_found_at_shifted_position(tmp_path: Path) -> None:
    original = _numbered(10)
    edited = original.replace("line 8\n", "line eight\n")
    shifted = "header a\nheader b\nheader c\n" + original
    base = _tree(tmp_path, {"notes.txt": shifted})
    stack = PatchStack((_entry("0001-Edit.patch", ("notes.txt", original, edited)),))

    result = PatchApplier().apply(base, stack)

    assert result.tree.read("notes.txt").decode() == "header a\nheader b\nheader c\n" + edited


def test_changed_context_is_not_fuzzed(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"notes.txt": "alpha\nBETA\ngamma\n"})
    stack = PatchStack((_entry("0001-Edit.patch", ("notes.txt", "alpha\nbeta\ngamma\n", "alpha\nbeta\ndelta\n")),))

    with pytest.raises(PatchApplyError):
        PatchApplier().apply(base, stack)


def test_add_over_existing_file_and_delete_of_missing_file_fail(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"present.txt": "here\n"})
    stack = PatchStack(
        (
            _entry("0001-Add.patch", ("present.txt", None, "new\n")),
            _entry("0002-Delete.patch", ("absent.txt", "gone\n", None)),
        )
    )

    result = PatchApplier().apply(base, stack, ApplyOptions(emit_rejects=True))

    reasons = [failure.reason for failure in result.failures]
    assert reasons == ["file already exists", "file does not exist"]
    assert result.tree.read("present.txt") == b"here\n"
    assert [reject.file_name for reject in result.rejects] == ["present.txt.rej", "absent.txt.rej"]


def test_delete_removes_file(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"old.txt": "bye\n", "keep.txt": "hi\n"})
    stack = PatchStack((_entry("0001-Delete.patch", ("old.txt", "bye\n", None)),))

    result = PatchApplier().apply(base, stack)

    assert result.tree.files() == ["keep.txt"]


def test_excluded_paths_are_never_touched(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"README.md": "# Upstream\n", "src/Foo.java": "class Foo {}\n"})
    stack = PatchStack(
        (
            _entry(
                "0001-Both.patch",
                ("README.md", "# Other\n", "# Fork\n"),
                ("src/Foo.java", "class Foo {}\n", "class Foo { }\n"),
            ),
        )
    )

    result = PatchApplier().apply(base, stack, exclusions=ExclusionRules.from_patterns(["README.md"]))

    assert result.is_clean
    assert result.tree.read("README.md") == b"# Upstream\n"
    assert result.tree.read("src/Foo.java") == b"class Foo { }\n"


def test_apply_hunks_prefers_closest_match() -> None:
    lines = split_lines(b"x\nmark\ny\nmark\nz\n")
    diff = generate_file_diff("f", b"mark\n", b"MARK\n")

    output, failed = apply_hunks(lines, diff.hunks)

    assert failed == ()
    assert "".join(output) == "x\nMARK\ny\nmark\nz\n"
