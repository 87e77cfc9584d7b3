import sys
from datetime import datetime
from pathlib import Path

import pytest


def _add_repo_root_to_path() -> None:
    repo_root = Path(__file__).resolve().parent.parent
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))


_add_repo_root_to_path()

import parcel_packer as packer


@pytest.fixture
def catalog():
    return {
        "a": packer.Item(id="a", name="Mug", weight=2.0),
        "b": packer.Item(id="b", name="Armchair", weight=29.0),
        "c": packer.Item(id="c", name="Lamp", weight=7.5),
        "d": packer.Item(id="d", name="Desk", weight=45.0),
        "e": packer.Item(id="e", name="Book", weight=0.5),
    }


@pytest.fixture
def make_order():
    def _make(order_id, *lines):
        return packer.Order(
            id=order_id,
            date=datetime(2024, 3, 1, 10, 0),
            lines=tuple(packer.OrderLine(item=it, quantity=q) for it, q in lines),
        )

    return _make


@pytest.fixture
def tracking_codes():
    """Sequential fake provider that records how often it was called."""

    class _Codes:
        def __init__(self):
            self.calls = 0

        def __call__(self):
            self.calls += 1
            return f"TRK{self.calls:03d}"

    return _Codes()
