import pytest
from myrepo.rpm_version import compare_evr, compare_rpm_versions, rpmvercmp, split_evr

# Test cases for rpmvercmp: (a, b, expected)
rpmvercmp_test_cases = [
    ("1.0", "1.0", 0),
    ("1.0", "2.0", -1),
    ("2.0", "1.0", 1),
    ("10.2", "10.10", -1),      # Numeric segments compare as integers
    ("1.010", "1.10", 0),       # Leading zeros are ignored
    ("1.0", "1.0.1", -1),
    ("1.0a", "1.0", 1),
    ("1a", "1.0", -1),          # Numeric beats alphabetic
    ("a", "1", -1),
    ("abc", "abd", -1),
    ("1.0~rc1", "1.0", -1),     # Tilde sorts before everything
    ("1.0~rc1", "1.0~rc2", -1),
    ("1.0~~", "1.0~", -1),
    ("1_0", "1.0", 0),          # Separators are insignificant
    ("el9", "el9_1", -1),
    ("1.el9_2", "1.el9_10", -1),
]


@pytest.mark.parametrize("a, b, expected", rpmvercmp_test_cases)
def test_rpmvercmp(a, b, expected):
    """Test rpmvercmp in both directions."""
    assert rpmvercmp(a, b) == expected
    assert rpmvercmp(b, a) == -expected


@pytest.mark.parametrize("evr, expected", [
    ("1.0-1", ("0", "1.0", "1")),
    ("2:1.0-1.el9", ("2", "1.0", "1.el9")),
    ("1.0", ("0", "1.0", "")),
    (":1.0-1", ("0", "1.0", "1")),
])
def test_split_evr(evr, expected):
    assert split_evr(evr) == expected


def test_compare_evr_epoch_dominates():
    assert compare_evr(("1", "1.0", "1"), ("0", "9.9", "9")) == 1
    assert compare_evr(("(none)", "1.0", "1"), ("0", "1.0", "1")) == 0


def test_compare_evr_missing_release_does_not_decide():
    assert compare_evr(("0", "1.0", ""), ("0", "1.0", "5")) == 0
    assert compare_evr(("0", "1.0", "2"), ("0", "1.0", "10")) == -1


@pytest.mark.parametrize("v1, v2, expected", [
    ("1.0-1", "1.0-1", 0),
    ("2.0-2", "2.0-10", -1),
    ("1:1.0-1", "2.0-1", 1),
    ("10.2-1.el9", "10.10-1.el9", -1),
    ("1.0~beta-1", "1.0-1", -1),
])
def test_compare_rpm_versions(v1, v2, expected):
    assert compare_rpm_versions(v1, v2) == expected
    assert compare_rpm_versions(v2, v1) == -expected


def test_non_numeric_epoch_treated_as_zero(caplog):
    assert compare_evr(("x", "1.0", "1"), ("0", "1.0", "1")) == 0
    assert "Non-numeric epoch" in caplog.text


def test_rpmvercmp_normalizes_library_result(mocker):
    library = mocker.patch("myrepo.rpm_version.vercmp", return_value=7)
    assert rpmvercmp("2.0", "1.0") == 1
    library.assert_called_once_with("2.0", "1.0")
    library.return_value = -3
    assert rpmvercmp("1.0", "2.0") == -1


def test_rpmvercmp_invalid_input_compares_equal(mocker, caplog):
    mocker.patch("myrepo.rpm_version.vercmp", side_effect=TypeError("not a string"))
    assert rpmvercmp("1.0", None) == 0
    assert "Invalid RPM version string" in caplog.text
