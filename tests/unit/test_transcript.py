"""
Tests for text cleanup, transcript entries and meeting export.
"""

import json
from datetime import datetime

import pytest

from huddle.transcript import (
    TranscriptExport,
    TranscriptionEntry,
    format_timestamp,
    post_process_text,
    sanitize_filename,
)

START = datetime(2024, 3, 5, 14, 30, 0)


def entry(text, speaker="Alice", offset=0.0, is_final=True):
    return TranscriptionEntry(
        id=f"{int((START.timestamp() + offset) * 1000)}_0",
        timestamp=START.timestamp() + offset,
        speaker=speaker,
        speaker_id=speaker.lower(),
        text=text,
        confidence=0.9,
        audio_level=0.4,
        is_final=is_final,
    )


def make_export(segments=None, minutes=30, **kwargs):
    end = datetime.fromtimestamp(START.timestamp() + minutes * 60)
    return TranscriptExport(start_time=START, end_time=end, segments=segments or [], **kwargs)


class TestPostProcessText:
    """Filler, hallucination and punctuation cleanup."""

    def test_removes_fillers(self):
        assert post_process_text("Hello um world") == "Hello world."
        assert post_process_text("Hello uhh world") == "Hello world."
        assert post_process_text("Hello hmm world") == "Hello world."

    def test_preserves_real_words(self):
        assert post_process_text("The umbrella is here") == "The umbrella is here."

    def test_trailing_hallucinations(self):
        assert post_process_text("Hello world. Thank you for watching.") == "Hello world."
        assert post_process_text("Hello world. Please like and subscribe.") == "Hello world."

    def test_whole_text_hallucinations(self):
        for text in ["Thank you.", "[Music]", "(upbeat music)", "...", "you"]:
            assert post_process_text(text) == "", text

    def test_punctuation_cleanup(self):
        assert post_process_text("Hello , world .") == "Hello, world."
        assert post_process_text("Is it ready?") == "Is it ready?"

    def test_only_fillers(self):
        assert post_process_text("um uh hmm") == ""
        assert post_process_text("") == ""

    def test_interim_has_no_closing_period(self):
        assert post_process_text("so what we", final=False) == "so what we"

    def test_filler_removal_can_be_disabled(self, config):
        config.set_config_value(False, 'post_processing', 'remove_filler_words')
        assert post_process_text("Hello um world") == "Hello um world."

    def test_name_replacements(self, config):
        config.set_config_value({"jon": "Jon Snow"}, 'post_processing', 'name_replacements')
        assert post_process_text("ask jon about it") == "ask Jon Snow about it."


class TestHelpers:
    def test_format_timestamp(self):
        assert format_timestamp(65) == "01:05"
        assert format_timestamp(3725) == "01:02:05"
        assert format_timestamp(-3) == "00:00"

    def test_sanitize_filename(self):
        assert sanitize_filename('Plan: Q3/Q4?') == "Plan Q3Q4"
        assert sanitize_filename("") == "untitled"
        assert sanitize_filename("...") == "untitled"


class TestTranscriptionEntry:
    def test_dict_fields(self):
        data = entry("Hello.").to_dict()
        assert data["speaker"] == "Alice"
        assert data["speaker_id"] == "alice"
        assert data["is_final"] is True

    def test_from_dict_defaults(self):
        restored = TranscriptionEntry.from_dict({
            "id": "1_0", "timestamp": 1.0, "speaker": "Bob", "text": "Hi."
        })
        assert restored.speaker_id == ""
        assert restored.confidence == 0.0
        assert restored.is_final

    def test_entries_are_immutable(self):
        with pytest.raises(Exception):
            entry("Hello.").text = "changed"


class TestTranscriptExport:
    """Meeting export."""

    def test_default_title(self):
        assert make_export().title == "Meeting 2024-03-05 14:30"

    def test_summary(self):
        export = make_export(
            [entry("Hi."), entry("Hey.", speaker="Bob", offset=10)],
            minutes=30,
            participants={"Alice": {"segments": 1}},
        )
        assert export.summary == "Meeting summary: 2 segments from 2 speakers over 30 minutes."
        assert set(export.participants) == {"Alice", "Bob"}

    def test_summary_rounds_minutes(self):
        export = make_export(minutes=1.6)
        assert export.summary == "Meeting summary: 0 segments from 0 speakers over 2 minutes."

    def test_markdown(self):
        export = make_export([entry("Hello.", offset=5), entry("Hi!", speaker="Bob", offset=65)], title="Standup")
        md = export.to_markdown()
        assert md.startswith("# Standup")
        assert "**Duration**: 30 minutes" in md
        assert "**Participants**: Alice, Bob" in md
        assert "**[00:05] Alice**: Hello." in md
        assert "**[01:05] Bob**: Hi!" in md

    def test_markdown_without_timestamps(self):
        md = make_export([entry("Hello.")], include_timestamps=False).to_markdown()
        assert "**Alice**: Hello." in md
        assert "[00:00]" not in md

    def test_save_to_directory(self, temp_dir):
        path = make_export([entry("Hello.")]).save(temp_dir)
        assert path == temp_dir / "meeting_20240305_143000.md"
        assert "Hello." in path.read_text(encoding="utf-8")
        assert list(temp_dir.glob("*.tmp")) == []

    def test_save_json(self, temp_dir):
        path = make_export([entry("Hello.")], title="Standup").save(temp_dir / "standup.json")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["title"] == "Standup"
        assert data["duration"] == 1800
        assert data["segments"][0]["text"] == "Hello."
        assert data["summary"].startswith("Meeting summary: 1 segments")

    def test_save_default_location(self, temp_dir, config):
        config.set_config_value(str(temp_dir / "out"), 'transcript', 'output_dir')
        path = make_export().save()
        assert path.parent == temp_dir / "out"
        assert path.exists()
