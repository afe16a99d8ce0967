from datetime import datetime, timezone

import pytest

from coachmeter.core.errors import ValidationError
from coachmeter.features.children.service import child_exists, get_child, register_child

NOW = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)


def test_register_and_lookup_child():
    child = register_child("child-cy", " Cy ", now=NOW)

    assert child.name == "Cy"
    assert child.created_at == NOW
    assert child_exists("child-cy") is True
    assert get_child("child-cy").name == "Cy"


def test_register_child_is_idempotent():
    first = register_child("child-cy", "Cy", now=NOW)
    second = register_child("child-cy", "Cyrus", now=datetime(2026, 4, 1, tzinfo=timezone.utc))

    assert second.created_at == first.created_at
    assert get_child("child-cy").created_at == NOW
    assert get_child("child-cy").name == "Cyrus"


def test_unknown_child():
    assert child_exists("nobody") is False
    assert get_child("nobody") is None


@pytest.mark.parametrize("child_id,name", [("", "Cy"), ("child-cy", "  ")])
def test_register_child_requires_id_and_name(child_id, name):
    with pytest.raises(ValidationError):
        register_child(child_id, name, now=NOW)
