import pytest

from services.preferences import (
    coerce_boolean,
    measurement_prefs_from_answers,
    merge_measurement_prefs,
    normalize_measurement_prefs,
    normalize_smoking_prefs,
    smoking_prefs_from_answers,
)


@pytest.mark.parametrize(
    "value,expected",
    [(True, True), ("Yes", True), (" y ", True), (1, True), ("no", False), (0, False), ("maybe", None), (None, None), (2, None)],
)
def test_coerce_boolean(value, expected):
    assert coerce_boolean(value) is expected


def test_measurement_prefs_from_nested_and_flat_answers():
    answers = {"measurement_prefs": {"height": "metric", "weight": "stone"}, "weight_unit": "imperial", "waist_unit": "cm"}

    assert measurement_prefs_from_answers(answers) == {"height": "metric", "weight": "imperial"}
    assert measurement_prefs_from_answers({"age": 30}) is None
    assert measurement_prefs_from_answers("nope") is None


def test_merge_measurement_prefs_only_reports_changes():
    assert merge_measurement_prefs({"height": "metric"}, {"weight": "imperial"}) == {"height": "metric", "weight": "imperial"}
    assert merge_measurement_prefs({"height": "metric"}, {"height": "metric"}) is None
    assert merge_measurement_prefs({"height": "metric"}, None) is None


def test_normalize_measurement_prefs_drops_unknown():
    assert normalize_measurement_prefs({"height": "metric", "shoe": "eu"}) == {"height": "metric"}
    assert normalize_measurement_prefs({"height": "furlongs"}) is None


def test_smoking_prefs():
    assert smoking_prefs_from_answers({}) is None
    assert smoking_prefs_from_answers({"smoke_now": "no", "smoke_type": "vape"}) == {
        "cigarettes": False,
        "vape": False,
        "weed": False,
    }
    assert smoking_prefs_from_answers({"smoke_now": True, "smoke_type": " Cigarettes "})["cigarettes"] is True
    # cigars have no profile flag
    assert smoking_prefs_from_answers({"smoke_now": "yes", "smoke_type": "cigars"}) == {
        "cigarettes": False,
        "vape": False,
        "weed": False,
    }


def test_normalize_smoking_prefs():
    assert normalize_smoking_prefs(None) is None
    assert normalize_smoking_prefs({}) is None
    assert normalize_smoking_prefs({"weed": 1}) == {"cigarettes": False, "vape": False, "weed": True}
