"""Tests for the laj3 command line."""

from __future__ import annotations

from pathlib import Path

import pytest
from rich.console import Console

from conftest import make_project, write_tree
from laj3 import cli
from laj3.configuration import load_configuration
from laj3.errors import InvalidPathError
from laj3.sync import build_dictionary, load_dictionary


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LAJ3_CONFIG_DIR", str(tmp_path / "no-config"))
    monkeypatch.delenv("LAJ3_LOG_LEVEL", raising=False)


def test_parse_install_arguments():
    invocation = cli.parse_args(
        ["--log-level", "debug", "install", "-f", "local.dict", "-d", "out", "--delete", "h:1/p"]
    )

    assert invocation.log_level == "debug"
    assert invocation.command == cli.InstallCommand(
        target="h:1/p", file=Path("local.dict"), dest=Path("out"), delete=True
    )


def test_parse_dict_arguments():
    invocation = cli.parse_args(["dict", "-r", "-o", "base.dict", "tree"])

    assert invocation.command == cli.DictCommand(
        root=Path("tree"), output=Path("base.dict"), recursive=True
    )


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.parse_args([])


def test_dict_writes_file(tmp_path: Path, capsys):
    root = write_tree(tmp_path / "tree", {"a.txt": b"a", "sub/b.txt": b"b"})
    output = tmp_path / "tree.dict"

    assert cli.main(["dict", "-r", "-o", str(output), str(root)]) == 0

    assert load_dictionary(output) == build_dictionary(root, recursive=True)
    assert "Saved dictionary with 2 files" in capsys.readouterr().out


def test_dict_prints_table_without_output(tmp_path: Path, capsys):
    root = write_tree(tmp_path / "tree", {"a.txt": b"a"})

    assert cli.main(["dict", str(root)]) == 0

    assert "a.txt" in capsys.readouterr().out


def test_dict_missing_root_exit_code(tmp_path: Path, capsys):
    assert cli.main(["dict", str(tmp_path / "nope")]) == InvalidPathError("x").code

    assert "error" in capsys.readouterr().err


def test_server_without_projects_fails(capsys):
    assert cli.main(["server", "--port", "0"]) == 2

    assert "No project to serve" in capsys.readouterr().err


def test_install_updates_local_dictionary(tmp_path: Path, serve):
    project = make_project(tmp_path, {"a.txt": b"alpha", "sub/b.txt": b"bravo"})
    host, port = serve(project)
    dest = tmp_path / "dest"
    dest.mkdir()
    local = tmp_path / "local.dict"

    assert cli.main(["dict", "-e", "-o", str(local), str(dest)]) == 0
    code = cli.main(
        ["install", "-f", str(local), "--update-dict", "-d", str(dest), f"{host}:{port}/demo"]
    )

    assert code == 0
    assert (dest / "sub" / "b.txt").read_bytes() == b"bravo"
    assert load_dictionary(local) == project.dictionary


def test_install_partial_failure_exit_code(tmp_path: Path, serve):
    project = make_project(tmp_path, {"a.txt": b"alpha", "b.txt": b"bravo"})
    (project.root / "b.txt").unlink()
    host, port = serve(project)

    code = cli.main(["install", "-d", str(tmp_path / "dest"), f"{host}:{port}/demo"])

    assert code == cli.PARTIAL_FAILURE_EXIT
    assert (tmp_path / "dest" / "a.txt").exists()


def test_install_defaults_to_current_directory(tmp_path: Path, serve, monkeypatch: pytest.MonkeyPatch):
    files = {"a.txt": b"alpha", "sub/b.txt": b"bravo"}
    host, port = serve(make_project(tmp_path, files))
    dest = tmp_path / "dest"
    dest.mkdir()
    monkeypatch.chdir(dest)

    assert cli.main(["install", f"{host}:{port}/demo"]) == 0

    assert (dest / "a.txt").read_bytes() == b"alpha"
    assert (dest / "sub" / "b.txt").read_bytes() == b"bravo"


@pytest.mark.parametrize("raw", ["-1", "many"])
def test_retries_must_be_a_non_negative_int(raw: str):
    with pytest.raises(SystemExit):
        cli.parse_args(["install", "--retries", raw, "h:1/p"])


def test_update_dict_requires_file(tmp_path: Path):
    assert cli.main(["install", "--update-dict", "-d", str(tmp_path), "h:1/p"]) == 2


def test_missing_config_file_exits(tmp_path: Path, capsys):
    assert cli.main(["--config", str(tmp_path / "nope.yml"), "dict", str(tmp_path)]) == 1

    assert "configuration is missing" in capsys.readouterr().err


def test_run_rejects_unknown_command(tmp_path: Path):
    bundle = load_configuration(config_dir=tmp_path)

    with pytest.raises(TypeError):
        cli.run(object(), bundle, Console())  # type: ignore[arg-type]
