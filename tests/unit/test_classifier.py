"""Tests for water-level → status classification."""

from __future__ import annotations

import os

import pytest

from shared.models.telemetry import StatusTier
from services.ingestion.classifier import DEFAULT_THRESHOLDS, StatusClassifier


class TestDefaultTable:
    @pytest.mark.parametrize(
        "level, expected",
        [
            (0.0, StatusTier.NORMAL),
            (59.0, StatusTier.NORMAL),
            (60.0, StatusTier.WASPADA),
            (89.9, StatusTier.WASPADA),
            (90.0, StatusTier.SIAGA_2),
            (120.0, StatusTier.SIAGA_1),
            (179.99, StatusTier.SIAGA_1),
            (180.0, StatusTier.BAHAYA),
            (500.0, StatusTier.BAHAYA),
        ],
    )
    def test_boundaries(self, classifier, level, expected):
        assert classifier.classify(level) is expected

    def test_negative_is_normal(self, classifier):
        assert classifier.classify(-12.5) is StatusTier.NORMAL

    def test_nan_is_normal(self, classifier):
        assert classifier.classify(float("nan")) is StatusTier.NORMAL

    def test_idempotent(self, classifier):
        assert {classifier.classify(121.0) for _ in range(5)} == {StatusTier.SIAGA_1}


class TestTierOrdering:
    def test_siaga_1_is_more_severe_than_siaga_2(self):
        assert StatusTier.SIAGA_1 > StatusTier.SIAGA_2
        assert StatusTier.NORMAL < StatusTier.WASPADA < StatusTier.BAHAYA

    def test_next_tier(self):
        assert StatusClassifier.next_tier(StatusTier.WASPADA) is StatusTier.SIAGA_2
        assert StatusClassifier.next_tier(StatusTier.SIAGA_2) is StatusTier.SIAGA_1
        assert StatusClassifier.next_tier(StatusTier.BAHAYA) is None

    def test_threshold_of(self, classifier):
        assert classifier.threshold_of(StatusTier.SIAGA_1) == 120.0
        assert classifier.threshold_of(StatusTier.NORMAL) is None


class TestConfiguredTables:
    def test_decreasing_table_rejected(self):
        with pytest.raises(ValueError):
            StatusClassifier(thresholds={"Siaga 2": 130, "Siaga 1": 120})

    def test_device_override(self):
        clf = StatusClassifier(device_overrides={"DEV-DEEP": {"Waspada": 235, "Siaga 2": 300,
                                                              "Siaga 1": 350, "Bahaya": 400}})
        assert clf.classify(200.0, device_id="DEV-DEEP") is StatusTier.NORMAL
        assert clf.classify(200.0, device_id="DEV-OTHER") is StatusTier.BAHAYA

    def test_partial_device_table_rejected(self):
        with pytest.raises(ValueError, match="missing threshold"):
            StatusClassifier(device_overrides={"DEV-DEEP": {"Waspada": 235}})

    def test_partial_device_table_in_yaml_fails_load(self, tmp_path):
        path = tmp_path / "thresholds.yaml"
        path.write_text("devices:\n  DEV-DEEP:\n    Waspada: 235\n")
        with pytest.raises(ValueError, match="missing threshold for Siaga 2"):
            StatusClassifier.from_yaml(str(path))

    def test_yaml_load_and_reload(self, tmp_path):
        path = tmp_path / "thresholds.yaml"
        path.write_text("default:\n  Waspada: 50\n  Siaga 2: 80\n  Siaga 1: 110\n  Bahaya: 170\n")
        clf = StatusClassifier.from_yaml(str(path))
        assert clf.classify(55.0) is StatusTier.WASPADA

        path.write_text("default:\n  Waspada: 60\n  Siaga 2: 90\n  Siaga 1: 120\n  Bahaya: 180\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))
        assert clf.reload_if_changed(force=True) is True
        assert clf.classify(55.0) is StatusTier.NORMAL

    def test_broken_edit_keeps_previous_table(self, tmp_path):
        path = tmp_path / "thresholds.yaml"
        path.write_text("default:\n  Waspada: 50\n")
        clf = StatusClassifier.from_yaml(str(path))

        path.write_text("default:\n  Waspada: 200\n  Bahaya: 100\n")
        assert clf.reload_if_changed(force=True) is False
        assert clf.threshold_of(StatusTier.WASPADA) == 50.0
        assert clf.threshold_of(StatusTier.BAHAYA) == DEFAULT_THRESHOLDS[StatusTier.BAHAYA]
