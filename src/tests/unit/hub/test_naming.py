"""Unit tests for instance naming."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from instancehub.instances.naming import InstanceNaming, sanitize_name


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Alice", "alice"),
        ("Carol Smith", "carol_smith"),
        ("Shop #1 (EU)", "shop_1_eu"),
        ("ñandú", "and"),
        ("!!!", "instance"),
        ("", "instance"),
    ],
)
def test_sanitize_name(name: str, expected: str) -> None:
    assert sanitize_name(name) == expected


class TestInstanceNaming:
    """Tests for InstanceNaming."""

    @pytest.fixture
    def naming(self, tmp_path: Path) -> InstanceNaming:
        return InstanceNaming(tmp_path)

    def test_instance_id(self, naming: InstanceNaming) -> None:
        now = datetime(2025, 3, 9, 7, 5, 1, tzinfo=UTC)

        assert naming.instance_id("Alice", now) == "alice_20250309070501"

    def test_paths(self, naming: InstanceNaming, tmp_path: Path) -> None:
        assert naming.registry_path == tmp_path / "instances.json"
        assert naming.config_path("a_1") == tmp_path / "a_1" / "config.json"
        assert naming.log_path("a_1") == tmp_path / "a_1" / "logs" / "app.log"

    def test_layout(self, naming: InstanceNaming, tmp_path: Path) -> None:
        root = tmp_path / "a_1"

        assert naming.layout("a_1") == [
            root / "storages",
            root / "statics" / "qrcode",
            root / "statics" / "senditems",
            root / "statics" / "media",
            root / "logs",
        ]
