"""
Tests for fleet_trip_engine.engine.ignition module.

Tests status word parsing, ACC text parsing and evidence scoring.
"""

import itertools
import logging

import pytest

from fleet_trip_engine.engine import parse_acc_text, parse_status_word, score_ignition
from fleet_trip_engine.models import DetectionMethod, IgnitionReading


class TestParseStatusWord:
    """Test parse_status_word()."""

    @pytest.mark.parametrize(
        ('status', 'expected'),
        [
            (1, 1),
            (0x10001, 0x10001),
            ('0x1', 1),
            ('65537', 65537),
            (3.0, 3),
            ((1 << 40) | 1, 1),
            (-1, None),
            (2.5, None),
            ('', None),
            ('abc', None),
            (None, None),
            (True, None),
        ],
    )
    def test_parses_status_values(self, status: object, expected: int | None) -> None:
        """Should accept numeric forms and keep the low 32 bits."""
        assert parse_status_word(status) == expected


class TestParseAccText:
    """Test parse_acc_text()."""

    @pytest.mark.parametrize(
        ('text', 'expected'),
        [
            ('ACC ON,GPS fixed', True),
            ('acc:on', True),
            ('ACC OFF', False),
            ('Parked, ACC OFF, ACC ON earlier', False),
            ('GPS fixed', None),
            (None, None),
        ],
    )
    def test_reads_acc_state(self, text: str | None, expected: bool | None) -> None:
        """Should read ON/OFF and check OFF first."""
        assert parse_acc_text(text) is expected


class TestScoreIgnition:
    """Test score_ignition()."""

    def test_base_bit_alone_is_on(self) -> None:
        """Should turn ignition on from the base ACC bit."""
        reading: IgnitionReading = score_ignition(1, 0.0)

        assert reading.ignition_on is True
        assert reading.confidence == 0.6
        assert reading.detection_method is DetectionMethod.STATUS_BIT

    def test_all_evidence_caps_at_one(self) -> None:
        """Should reach full confidence with base bit, extended bit and speed."""
        reading: IgnitionReading = score_ignition(0x10001, 50.0)

        assert reading.ignition_on is True
        assert reading.confidence == 1.0
        assert reading.detection_method is DetectionMethod.MULTI_SIGNAL
        assert reading.base_acc and reading.extended_acc and reading.speed_corroborated

    def test_base_bit_with_speed_is_multi_signal(self) -> None:
        """Should combine base bit and speed evidence."""
        reading: IgnitionReading = score_ignition(1, 50.0)

        assert reading.confidence == 0.8
        assert reading.detection_method is DetectionMethod.MULTI_SIGNAL

    def test_extended_bit_alone_is_conflict(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should treat extended-bit-only evidence as OFF and log it."""
        with caplog.at_level(logging.DEBUG, logger='fleet_trip_engine.engine.ignition'):
            reading: IgnitionReading = score_ignition(0x10000, 0.0, device_id='dev-1')

        assert reading.ignition_on is False
        assert reading.confidence == 0.2
        assert reading.detection_method is DetectionMethod.EXTENDED_BIT
        assert 'dev-1' in caplog.text

    def test_extended_bit_and_speed_stay_below_threshold(self) -> None:
        """Should keep ignition off with only weak evidence."""
        reading: IgnitionReading = score_ignition(0x10000, 60.0)

        assert reading.ignition_on is False
        assert reading.confidence == 0.4

    def test_speed_alone_is_off(self) -> None:
        """Should not turn ignition on from speed alone."""
        reading: IgnitionReading = score_ignition(0, 80.0)

        assert reading.ignition_on is False
        assert reading.detection_method is DetectionMethod.SPEED_ONLY

    def test_no_evidence(self) -> None:
        """Should report NONE with zero confidence."""
        reading: IgnitionReading = score_ignition(None, 0.0)

        assert reading.ignition_on is False
        assert reading.confidence == 0.0
        assert reading.has_evidence is False

    def test_text_used_only_without_status_word(self) -> None:
        """Should parse ACC text when no status word is present."""
        on_reading: IgnitionReading = score_ignition(None, 0.0, status_text='ACC ON')
        off_reading: IgnitionReading = score_ignition(None, 0.0, status_text='ACC OFF')
        ignored: IgnitionReading = score_ignition(0, 0.0, status_text='ACC ON')

        assert on_reading.ignition_on is True
        assert on_reading.confidence == 0.9
        assert on_reading.detection_method is DetectionMethod.STRING_PARSE
        assert off_reading.ignition_on is False
        assert ignored.ignition_on is False
        assert ignored.detection_method is DetectionMethod.NONE

    def test_custom_threshold(self) -> None:
        """Should honour a stricter on-threshold."""
        assert score_ignition(1, 0.0, on_threshold=0.7).ignition_on is False

    def test_adding_evidence_never_lowers_confidence(self) -> None:
        """Should be monotonic in every evidence signal."""
        for base, extended, moving in itertools.product((False, True), repeat=3):
            status: int = int(base) | (int(extended) << 16)
            speed: float = 50.0 if moving else 0.0
            confidence: float = score_ignition(status, speed).confidence

            if not base:
                assert score_ignition(status | 1, speed).confidence >= confidence
            if not extended:
                assert score_ignition(status | 0x10000, speed).confidence >= confidence
            if not moving:
                assert score_ignition(status, 50.0).confidence >= confidence
