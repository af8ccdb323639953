"""Tests for the command line interface."""

import importlib
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

cli = importlib.import_module("sightsinging_generator.cli")
models = importlib.import_module("sightsinging_generator.models")


@pytest.fixture
def no_settings(tmp_path):
    return ["--settings-file", str(tmp_path / "absent.json")]


def test_list_keys(capsys):
    cli.run_cli(["--list-keys"])
    keys = capsys.readouterr().out.split()
    assert "C" in keys and "Bb" in keys
    assert keys == sorted(keys)


def test_json_to_stdout(capsys, no_settings):
    cli.run_cli(no_settings + ["--key", "F", "--seed", "3", "--json", "-"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "ok"
    assert payload["seed"] == 3
    assert payload["events"][0]["keyId"] == "F-major"


def test_json_file_written(tmp_path, no_settings):
    target = tmp_path / "out" / "exercise.json"
    cli.run_cli(no_settings + ["--timesig", "3/4", "--json", str(target)])
    assert json.loads(target.read_text())["status"] == "ok"


def test_midi_file_written(tmp_path, no_settings):
    pytest.importorskip("mido")
    target = tmp_path / "exercise.mid"
    cli.run_cli(no_settings + ["--seed", "2", "--output", str(target)])
    assert target.exists()


def test_settings_provide_defaults(tmp_path, capsys):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"key": "G", "timesig": "3/4"}))
    cli.run_cli(["--settings-file", str(settings), "--json", "-"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["events"][0]["keyId"] == "G-major"
    assert all(e["beat"] < 4 for e in payload["events"])


@pytest.mark.parametrize(
    "extra",
    [
        [],
        ["--bpm", "0", "--json", "-"],
        ["--measures", "0", "--json", "-"],
        ["--timesig", "7/8", "--json", "-"],
        ["--low", "53", "--json", "-"],
    ],
)
def test_invalid_options_exit_with_error(no_settings, extra):
    with pytest.raises(SystemExit) as excinfo:
        cli.run_cli(no_settings + extra)
    assert excinfo.value.code == 1


def test_missing_spec_file_exits(tmp_path, no_settings):
    with pytest.raises(SystemExit) as excinfo:
        cli.run_cli(no_settings + ["--spec-file", str(tmp_path / "missing.json"), "--json", "-"])
    assert excinfo.value.code == 1


def test_infeasible_rules_exit_after_json(capsys, no_settings):
    with pytest.raises(SystemExit) as excinfo:
        cli.run_cli(no_settings + ["--illegal-degrees", "2,3,4,5,6,7", "--json", "-"])
    assert excinfo.value.code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "no_solution"


def test_options_override_spec_fields():
    parser = cli.build_parser()
    args = parser.parse_args(
        [
            "--phrases",
            "A:half,A':authentic",
            "--low",
            "5@3",
            "--illegal-transitions",
            "7-6",
            "--start-degree",
            "3",
            "--allowed-values",
            "q,h",
        ]
    )
    base = models.ExerciseSpec(key="D")
    spec = cli.build_spec_from_args(args, base)
    assert spec.key == "D"
    assert spec.phrases == [models.PhraseSpec("A", False, "half"), models.PhraseSpec("A", True, "authentic")]
    assert (spec.range.low_degree, spec.range.low_octave) == (5, 3)
    assert spec.illegal_transitions == [models.IllegalTransition(7, 6)]
    assert spec.starting_degree == 3
    assert spec.user_constraints.start_degree_locked
    assert spec.user_constraints.allowed_note_values == ["Q", "H"]
