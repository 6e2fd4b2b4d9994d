"""
Appliance version model.

Appliances report versions such as ``6.2.1-29983-release`` and upgrade
images are named like ``appgate-6.2.1-29983-release.img.zip``. Both are
parsed into a ``Version`` that orders by semantic version precedence first
and by build number second.
"""

import functools
import json
import logging
import os
import re
import zipfile
from typing import Optional, Tuple
from urllib.parse import urlparse

from sdpctl.errors import (
    InvalidImageNameError,
    UnsupportedUpgradePathError,
    VersionMismatchError,
    VersionParseError,
)

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(
    r"^(?:.*?[-_])?v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
IMAGE_SUFFIX = ".img.zip"
IMAGE_NAME_RE = re.compile(r"(.+)?\d+\.\d+\.\d+(.+)?\.img\.zip")

# Reported by the stats API when an appliance is offline.
UNKNOWN_VERSION = "unknown"

# (minor release, peer API version); highest entry not above the appliance wins.
PEER_API_VERSIONS = (
    ((5, 1), 12),
    ((5, 2), 13),
    ((5, 3), 14),
    ((5, 4), 15),
    ((5, 5), 16),
    ((6, 0), 17),
    ((6, 1), 18),
    ((6, 2), 19),
    ((6, 3), 20),
    ((6, 4), 21),
    ((6, 5), 22),
    ((6, 6), 23),
)


def _compare_prerelease(a: str, b: str) -> int:
    if a == b:
        return 0
    # A release has higher precedence than any pre-release of it.
    if not a:
        return 1
    if not b:
        return -1
    for x, y in zip(a.split("."), b.split(".")):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit():
            return -1
        if y.isdigit():
            return 1
        return -1 if x < y else 1
    la, lb = len(a.split(".")), len(b.split("."))
    return (la > lb) - (la < lb)


@functools.total_ordering
class Version:
    """Semantic version with an optional integer build number."""

    def __init__(
        self,
        major: int,
        minor: int = 0,
        patch: int = 0,
        prerelease: str = "",
        build: Optional[int] = None,
    ):
        self.major = major
        self.minor = minor
        self.patch = patch
        self.prerelease = prerelease
        self.build = build

    @property
    def core(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def compare(self, other: "Version") -> int:
        """Return <0, 0 or >0 by semver precedence, then by build number."""
        if self.core != other.core:
            return -1 if self.core < other.core else 1
        res = _compare_prerelease(self.prerelease, other.prerelease)
        if res != 0:
            return res
        # Both sides need a build number for it to break the tie.
        if self.build is not None and other.build is not None:
            return (self.build > other.build) - (self.build < other.build)
        return 0

    def __eq__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash((self.core, self.prerelease))

    def __repr__(self) -> str:
        return f"Version('{self}')"

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build is not None:
            text += f"+{self.build}"
        return text


def parse_version(text: str) -> Version:
    """
    Parse an appliance version string or image filename.

    Args:
        text: e.g. "6.2.1-29983-release", "6.2.1-rc.2+29983" or
            "appgate-6.2.1-29983-release.img.zip"

    Returns:
        Parsed Version

    Raises:
        VersionParseError: If no version can be found in the input
    """
    if not text:
        raise VersionParseError("failed to parse version string ''")
    name = text.strip().rsplit("/", 1)[-1]
    if name.endswith(IMAGE_SUFFIX):
        name = name[: -len(IMAGE_SUFFIX)]
    m = VERSION_RE.match(name)
    if not m:
        raise VersionParseError(f"failed to parse version string '{text}'")

    core = [int(p) if p else 0 for p in m.group(1, 2, 3)]

    build: Optional[int] = None
    metadata = m.group(5) or ""
    for part in re.split(r"[-.]", metadata):
        if part.isdigit():
            build = int(part)
            break

    # Hyphenated numeric and "release" parts are build decorations, not prerelease.
    pre_parts = []
    for part in (m.group(4) or "").split("-"):
        if part.isdigit() and build is None:
            build = int(part)
        elif part and part != "release":
            pre_parts.append(part)
    pre = "-".join(pre_parts)
    return Version(core[0], core[1], core[2], prerelease=pre, build=build)


def parse_version_from_zip(path: str) -> Version:
    """
    Read the version from the metadata.json entry of an upgrade image.

    Raises:
        VersionParseError: If the archive has no usable metadata
    """
    try:
        with zipfile.ZipFile(path) as zf:
            try:
                raw = zf.read("metadata.json")
            except KeyError:
                raise VersionParseError(f"no version found in {path}") from None
    except zipfile.BadZipFile as e:
        raise VersionParseError(f"{path} is not a zip archive: {e}") from e

    try:
        meta = json.loads(raw)
    except ValueError as e:
        raise VersionParseError(f"invalid metadata.json in {path}: {e}") from e
    return parse_version(str(meta.get("Version", "")))


def is_url(image: str) -> bool:
    return urlparse(image).scheme in ("http", "https")


def image_filename(image: str) -> str:
    """
    Return the repository filename for a local path or image URL.

    Raises:
        InvalidImageNameError: If the name lacks a version or .img.zip suffix
    """
    if is_url(image):
        name = os.path.basename(urlparse(image).path)
    else:
        name = os.path.basename(image)
    if not IMAGE_NAME_RE.match(name):
        raise InvalidImageNameError(
            f"invalid image file name '{name}'. The format is expected to be a "
            ".img.zip archive with a version number, such as 6.2.1"
        )
    return name


def target_version_from_image(image: str) -> Version:
    """
    Determine the version an upgrade image installs.

    Local archives are also inspected for metadata; when both the file name
    and the metadata carry a version they must agree.

    Raises:
        VersionParseError: If neither source yields a version
        VersionMismatchError: If the two sources disagree
    """
    name = image_filename(image)
    from_name: Optional[Version] = None
    try:
        from_name = parse_version(name)
    except VersionParseError:
        logger.debug(f"Could not guess target version from file name {name}")

    from_meta: Optional[Version] = None
    if not is_url(image) and os.path.isfile(image):
        try:
            from_meta = parse_version_from_zip(image)
        except VersionParseError as e:
            logger.debug(f"No metadata version in {image}: {e}")

    if from_name and from_meta and from_name.compare(from_meta) != 0:
        raise VersionMismatchError(
            f"image file name says {from_name} but metadata says {from_meta}"
        )
    version = from_meta or from_name
    if version is None:
        raise VersionParseError(f"could not determine version of image {image}")
    return version


def compare_versions(a: Version, b: Version) -> int:
    return a.compare(b)


def is_major_upgrade(current: Version, target: Version) -> bool:
    return target.major > current.major


def is_minor_upgrade(current: Version, target: Version) -> bool:
    return target.major == current.major and target.minor > current.minor


def is_patch_only(current: Version, target: Version) -> bool:
    return target.core[:2] == current.core[:2] and target.patch > current.patch


def crosses_log_boundary(current: Version, target: Version) -> bool:
    """True when going from 5.x to 6.x, where log appliances need their own phase."""
    return current.core < (6, 0, 0) <= target.core


def check_upgrade_path(current: Version, target: Version) -> None:
    """
    Reject upgrade paths known to break appliances.

    Raises:
        UnsupportedUpgradePathError: For 6.0.0 -> 6.2.0 and >=6.3.5 -> 6.4.0
    """
    disallowed = (
        current.core == (6, 0, 0) and target.core == (6, 2, 0),
        current.core >= (6, 3, 5) and target.core == (6, 4, 0),
    )
    if any(disallowed):
        raise UnsupportedUpgradePathError(
            f"upgrading from '{current}' to '{target}' is not allowed"
        )


def should_disable_controllers(current: Version, target: Version) -> bool:
    """Before 5.4, additional Controllers leave the Collective for a minor or major jump."""
    if current.core[:2] >= (5, 4):
        return False
    return is_major_upgrade(current, target) or target.minor > current.minor


def peer_api_version(version: Version) -> int:
    candidate = 0
    for release, peer in PEER_API_VERSIONS:
        if version.core[:2] >= release and peer > candidate:
            candidate = peer
    return candidate
