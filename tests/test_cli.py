"""Tests for the filedeps command-line interface."""

import json
import os

import pytest
import yaml

from filedeps.cli.main import build_parser, main


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run each CLI test from an empty project directory."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FILEDEPS_"):
            monkeypatch.delenv(key)
    return tmp_path


@pytest.fixture
def index_file(workdir):
    path = workdir / "index.yaml"
    path.write_text(yaml.safe_dump({
        "documents": [
            {
                "path": "app.py",
                "language": "python",
                "occurrences": [
                    {"symbol": "pkg#db.", "roles": 2, "range": [1, 0, 1, 2]},
                    {"symbol": "pkg#log.", "roles": 2, "range": [2, 0, 3]},
                ],
            },
            {"path": "db.py", "occurrences": [{"symbol": "pkg#db.", "roles": 1}, {"symbol": "pkg#app.", "roles": 2}]},
            {"path": "log.py", "occurrences": [{"symbol": "pkg#log.", "roles": 1}]},
            {"path": "entry.py", "occurrences": [{"symbol": "pkg#app.", "roles": 1}]},
        ],
    }))
    return path


def run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


def test_parser_requires_subcommand_arguments():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["closure", "owner"])


def test_no_command_prints_help(capsys):
    main([])
    assert "usage" in capsys.readouterr().out


def test_init_writes_config(workdir, capsys):
    main(["init"])

    config = yaml.safe_load((workdir / ".filedeps" / "config.yaml").read_text())
    assert config["storage"]["backend"] == "sqlite"
    assert (workdir / ".filedeps" / ".gitignore").exists()


def test_init_refuses_to_overwrite(workdir):
    main(["init"])

    with pytest.raises(SystemExit) as exc_info:
        main(["init"])
    assert exc_info.value.code == 1

    main(["init", "--force"])


def test_full_workflow(workdir, index_file, capsys):
    db = str(workdir / "graph.db")

    loaded = json.loads(run(capsys, "load-index", "me", "repo", str(index_file), "--db", db))
    assert loaded["documentCount"] == 4
    assert loaded["occurrenceCount"] == 6

    extracted = json.loads(run(capsys, "extract", "me", "repo", "--db", db))
    assert extracted["edgeCount"] == 3

    closure = json.loads(run(capsys, "closure", "me", "repo", "app.py", "--db", db, "--max-depth", "1"))
    assert [(e["sourceFile"], e["targetFile"], e["depth"]) for e in closure["edges"]] == [
        ("app.py", "db.py", 0),
        ("app.py", "log.py", 0),
        ("db.py", "entry.py", 1),
    ]

    graph = json.loads(run(capsys, "graph", "me", "repo", "--db", db))
    assert {node["filePath"] for node in graph["nodes"]} == {"app.py", "db.py", "log.py", "entry.py"}
    assert graph["cycles"] == []

    references = json.loads(run(capsys, "references", "me", "repo", "pkg#db.", "--role", "reference", "--db", db))
    assert [r["filePath"] for r in references] == ["app.py"]


def test_output_file(workdir, index_file, capsys):
    db = str(workdir / "graph.db")
    output = workdir / "closure.json"
    main(["load-index", "me", "repo", str(index_file), "--db", db])
    main(["extract", "me", "repo", "--db", db])
    capsys.readouterr()

    main(["closure", "me", "repo", "app.py", "--db", db, "-o", str(output)])

    assert capsys.readouterr().out == ""
    assert json.loads(output.read_text())["rootFile"] == "app.py"


def test_closure_rejects_zero_depth(workdir, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["closure", "me", "repo", "app.py", "--db", str(workdir / "graph.db"), "--max-depth", "0"])

    assert exc_info.value.code == 1
    assert "max_depth" in capsys.readouterr().err


def test_invalid_index_file(workdir, capsys):
    bad = workdir / "bad.yaml"
    bad.write_text(yaml.safe_dump({"documents": [{"path": "a.py", "occurrences": [{"symbol": "x", "range": [1]}]}]}))

    with pytest.raises(SystemExit):
        main(["load-index", "me", "repo", str(bad), "--db", str(workdir / "graph.db")])

    assert "Invalid index file" in capsys.readouterr().err


def test_missing_index_file(workdir, capsys):
    with pytest.raises(SystemExit):
        main(["load-index", "me", "repo", str(workdir / "nope.yaml"), "--db", str(workdir / "graph.db")])

    assert "Cannot read index file" in capsys.readouterr().err
