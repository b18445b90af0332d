"""Unit tests for npm package name validation."""

import pytest

from craft.tools.package_validation import is_valid_package_name
from craft.tools.package_validation import MAX_PACKAGE_NAME_LENGTH
from craft.tools.package_validation import partition_packages


@pytest.mark.parametrize(
    "name",
    [
        "lodash",
        "@scope/pkg",
        "react-dom",
        "lodash.merge",
        "@tanstack/react-query",
        "three_d",
    ],
)
def test_accepts_valid_names(name: str) -> None:
    assert is_valid_package_name(name)


@pytest.mark.parametrize(
    "name",
    [
        "",
        "bad name!",
        "../evil",
        "lodash; rm -rf /",
        "$(whoami)",
        "pkg`id`",
        "lodash\n",
        "@scope/",
        "@/pkg",
        "a/b",
        "-g",
        "--global",
        "--registry=http://evil.example",
        "@-scope/pkg",
    ],
)
def test_rejects_invalid_names(name: str) -> None:
    assert not is_valid_package_name(name)


def test_rejects_overlong_names() -> None:
    assert not is_valid_package_name("a" * (MAX_PACKAGE_NAME_LENGTH + 1))
    assert is_valid_package_name("a" * MAX_PACKAGE_NAME_LENGTH)


def test_rejects_non_strings() -> None:
    assert not is_valid_package_name(None)  # type: ignore[arg-type]
    assert not is_valid_package_name(42)  # type: ignore[arg-type]


def test_partition_keeps_order_and_reports_rejections() -> None:
    partition = partition_packages(["lodash", "@scope/pkg", "bad name!", "../evil"])

    assert partition.valid == ["lodash", "@scope/pkg"]
    assert partition.rejected == ["bad name!", "../evil"]


def test_partition_collapses_duplicates() -> None:
    partition = partition_packages(["zod", "zod", "react"])

    assert partition.valid == ["zod", "react"]
    assert partition.rejected == []


def test_partition_all_invalid() -> None:
    partition = partition_packages(["; ls", "&&"])

    assert partition.valid == []
    assert partition.rejected == ["; ls", "&&"]


def test_option_lookalikes_never_reach_the_install_command() -> None:
    partition = partition_packages(["-g", "zod", "--global"])

    assert partition.valid == ["zod"]
    assert partition.rejected == ["-g", "--global"]
