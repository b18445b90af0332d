"""Validation of npm package names before they reach a shell command."""

import re

from craft.tools.models import PackagePartition

# npm's own limit on package name length
MAX_PACKAGE_NAME_LENGTH = 214

# Optional @scope/ prefix followed by the package name. Lowercase letters,
# digits, "-", ".", "_" and "~" only, so nothing here can break out of a
# shell argument. Neither part may start with "-" or it would be read as a
# pnpm option.
_PACKAGE_NAME_PATTERN = re.compile(
    r"^(@[a-z0-9~][a-z0-9._~-]*/)?[a-z0-9~][a-z0-9._~-]*$", re.IGNORECASE
)


def is_valid_package_name(name: str) -> bool:
    if not isinstance(name, str):
        return False
    if not name or len(name) > MAX_PACKAGE_NAME_LENGTH:
        return False
    return _PACKAGE_NAME_PATTERN.fullmatch(name) is not None


def partition_packages(packages: list[str]) -> PackagePartition:
    """Split requested packages into valid and rejected, preserving order.

    Duplicates are collapsed. Invalid entries are reported back verbatim
    (stringified) so the caller can tell the user what was dropped.
    """
    valid: list[str] = []
    rejected: list[str] = []
    for package in packages:
        if is_valid_package_name(package):
            if package not in valid:
                valid.append(package)
        else:
            rejected.append(str(package))

    return PackagePartition(valid=valid, rejected=rejected)
