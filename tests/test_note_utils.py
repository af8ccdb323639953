"""Tests for pitch and scale-degree helpers."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

note_utils = importlib.import_module("sightsinging_generator.note_utils")


@pytest.mark.parametrize(
    "note,expected",
    [("C4", 60), ("A4", 69), ("C#4", 61), ("Db4", 61), ("B3", 59), ("C-1", 0)],
)
def test_note_to_midi(note, expected):
    assert note_utils.note_to_midi(note) == expected


@pytest.mark.parametrize("bad", ["H4", "C", "C##4", "A9"])
def test_note_to_midi_rejects_invalid(bad):
    with pytest.raises(ValueError):
        note_utils.note_to_midi(bad)


def test_midi_to_note_round_trip_and_range():
    assert note_utils.midi_to_note(61) == "C#4"
    with pytest.raises(ValueError):
        note_utils.midi_to_note(128)


def test_scale_degrees_in_g_major():
    scale = note_utils.key_scale_pcs(7, "major")
    assert scale == (7, 9, 11, 0, 2, 4, 6)
    assert note_utils.midi_to_degree(67, scale) == 1
    assert note_utils.midi_to_degree(66, scale) == 7
    # Chromatic pitches fall back to degree 1.
    assert note_utils.midi_to_degree(68, scale) == 1
    assert note_utils.degree_to_pc(8, scale) == 7


def test_chord_for_degree_and_quality():
    assert note_utils.chord_for_degree(0, "major", 5) == (7, 11, 2)
    assert note_utils.quality_for_degree("major", 7) == "diminished"
    assert note_utils.chord_for_degree(9, "minor", 1) == (9, 0, 4)


def test_parse_register_orders_bounds():
    assert note_utils.parse_register(0, "major", 1, 4, 1, 5) == (60, 72)
    assert note_utils.parse_register(0, "major", 1, 5, 5, 3) == (55, 72)


def test_nearest_allowed_pc_respects_leap_cap():
    # Nearest C to 70 is 72, but a 2-semitone cap from 60 allows nothing.
    assert note_utils.nearest_allowed_pc_within_leap_cap([0], 70, 60, 48, 84, 2) == 60
    assert note_utils.nearest_allowed_pc_within_leap_cap([0], 70, 66, 48, 84, 12) == 72
    assert note_utils.nearest_allowed_pc_within_leap_cap([1], 70, 60, 60, 60, 12) is None


def test_next_scale_step_and_nearest_chord_tone():
    scale = note_utils.key_scale_pcs(0, "major")
    assert note_utils.next_scale_step(64, 1, scale, 60, 72) == 65
    assert note_utils.next_scale_step(72, 1, scale, 60, 72) is None
    assert note_utils.nearest_chord_tone((0, 4, 7), 66, 60, 72) == 67
    assert note_utils.nearest_chord_tone((1,), 50, 62, 72) == 62


def test_js_round_half_up():
    assert note_utils.js_round(2.5) == 3
    assert note_utils.js_round(-2.5) == -2
