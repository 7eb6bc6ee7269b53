"""Tests for analyst_core.frame_decoder."""
import json
import random

import pytest

from analyst_core.entities import CompleteFrame, ErrorFrame, ProgressFrame
from analyst_core.errors import MalformedFrameError
from analyst_core.frame_decoder import FrameDecoder, parse_frame

STREAM = (
    ": keep-alive\n\n"
    'data: {"progress": 5, "stage": "Reading transcript"}\n\n'
    'data: {"progress": 40}\n\n'
    'data: {"progress": 75, "stage": "Rendering ünïcode"}\n\n'
    'data: {"complete": true, "markdown": "# Req", "mermaid": "flowchart TD; A-->B", '
    '"requirements": {"primaryGoal": "Track orders"}}\n\n'
)


def _decode(chunks):
    decoder = FrameDecoder()
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    decoder.close()
    return frames


def _split(text, offsets):
    pieces, last = [], 0
    for offset in sorted(offsets):
        pieces.append(text[last:offset])
        last = offset
    pieces.append(text[last:])
    return pieces


class TestParseFrame:
    def test_progress_with_stage(self):
        assert parse_frame('{"progress": 10, "stage": "scan"}') == ProgressFrame(percent=10, stage="scan")

    def test_progress_is_clamped(self):
        assert parse_frame('{"progress": 140}').percent == 100
        assert parse_frame('{"progress": -3}').percent == 0

    def test_complete_keeps_result_fields(self):
        frame = parse_frame('{"complete": true, "markdown": "X", "requirements": {"a": 1}}')
        assert isinstance(frame, CompleteFrame)
        assert frame.markdown == "X"
        assert frame.requirements == {"a": 1}
        assert "complete" not in frame.payload

    def test_error_frame(self):
        assert parse_frame('{"error": "Extraction failed"}') == ErrorFrame(message="Extraction failed")

    @pytest.mark.parametrize(
        "payload",
        [
            "{not json",
            "[1, 2]",
            '{"progress": "ten"}',
            '{"progress": true}',
            '{"complete": false, "markdown": "X"}',
            '{"hello": "world"}',
        ],
    )
    def test_malformed_payloads_raise(self, payload):
        with pytest.raises(MalformedFrameError):
            parse_frame(payload)


class TestFrameDecoder:
    def test_split_frame_scenario(self):
        """A frame split mid-payload is emitted exactly once."""
        decoder = FrameDecoder()
        assert decoder.feed('data: {"progress":10') == []
        frames = decoder.feed(',"stage":"scan"}\n')
        assert frames == [ProgressFrame(percent=10, stage="scan")]
        assert decoder.pending == ""

    def test_non_prefixed_lines_ignored(self):
        frames = _decode([": comment\n", "\n", "event: message\n", 'data: {"progress": 3}\n'])
        assert frames == [ProgressFrame(percent=3)]

    def test_malformed_line_skipped_and_counted(self):
        decoder = FrameDecoder()
        frames = decoder.feed('data: {"progress": oops}\ndata: {"complete": true, "markdown": "X"}\n')
        assert frames == [CompleteFrame(payload={"markdown": "X"})]
        assert decoder.malformed_count == 1

    def test_partial_line_discarded_at_close(self):
        decoder = FrameDecoder()
        decoder.feed('data: {"progress": 20}\ndata: {"complete": true')
        assert decoder.pending.startswith("data: ")
        assert decoder.close() == []
        assert decoder.pending == ""

    def test_feed_after_close_rejected(self):
        decoder = FrameDecoder()
        decoder.close()
        with pytest.raises(RuntimeError):
            decoder.feed("data: {}\n")

    def test_crlf_lines(self):
        frames = _decode(['data: {"progress": 7}\r\n\r\n'])
        assert frames == [ProgressFrame(percent=7)]

    def test_every_single_split_point_matches_whole_stream(self):
        expected = _decode([STREAM])
        assert len(expected) == 4
        for offset in range(len(STREAM) + 1):
            assert _decode(_split(STREAM, [offset])) == expected, offset

    def test_random_fragmentations_match_whole_stream(self):
        expected = _decode([STREAM])
        rng = random.Random(1234)
        for _ in range(300):
            count = rng.randint(1, 25)
            offsets = [rng.randint(0, len(STREAM)) for _ in range(count)]
            assert _decode(_split(STREAM, offsets)) == expected

    def test_one_character_chunks(self):
        assert _decode(list(STREAM)) == _decode([STREAM])

    def test_frames_keep_arrival_order(self):
        lines = "".join(f"data: {json.dumps({'progress': p})}\n\n" for p in (1, 2, 3, 50, 51))
        assert [f.percent for f in _decode(_split(lines, [3, 17, 40]))] == [1, 2, 3, 50, 51]
