import logging
from rpm_vercmp.vercmp import vercmp

logger = logging.getLogger(__name__)


def rpmvercmp(version_str1: str, version_str2: str) -> int:
    """
    Compares two version (or release) strings with rpm's ordering.
    Returns: -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    try:
        rc = vercmp(version_str1, version_str2)
    except (TypeError, ValueError):
        logger.exception("Invalid RPM version string encountered")
        return 0

    if rc > 0: return 1
    elif rc < 0: return -1
    else: return 0


def split_evr(evr: str) -> tuple[str, str, str]:
    """Splits '[epoch:]version[-release]' into (epoch, version, release)."""
    epoch = "0"
    if ":" in evr:
        epoch, evr = evr.split(":", 1)
        epoch = epoch or "0"
    version, _, release = evr.partition("-")
    return epoch, version, release


def _epoch_int(epoch: str) -> int:
    try:
        return int(epoch) if epoch not in ("", "(none)") else 0
    except ValueError:
        logger.warning(f"Non-numeric epoch {epoch!r} treated as 0")
        return 0


def compare_evr(evr1: tuple[str, str, str], evr2: tuple[str, str, str]) -> int:
    """
    Compares two (epoch, version, release) tuples.
    Returns: -1 if evr1 < evr2, 0 if equal, 1 if evr1 > evr2
    """
    e1, e2 = _epoch_int(evr1[0]), _epoch_int(evr2[0])
    if e1 != e2:
        return 1 if e1 > e2 else -1
    rc = rpmvercmp(evr1[1], evr2[1])
    if rc != 0:
        return rc
    # A missing release on either side does not decide the order
    if not evr1[2] or not evr2[2]:
        return 0
    return rpmvercmp(evr1[2], evr2[2])


def compare_rpm_versions(version_str1: str, version_str2: str) -> int:
    """
    Compares two RPM version strings of the form '[epoch:]version[-release]'.
    Returns: -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    return compare_evr(split_evr(version_str1), split_evr(version_str2))
