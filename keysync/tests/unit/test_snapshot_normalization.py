from __future__ import annotations

from datetime import datetime, timezone

from keysync.services.reconciliation import (
    SnapshotItem,
    has_more_pages,
    items_from_body,
    normalize_snapshot_item,
    select_winner,
)


def _item(remote_id: str = "", *, valid_until: datetime | None = None, subscription_id: str = "s-1") -> SnapshotItem:
    return SnapshotItem(
        owner_id="7",
        subscription_id=subscription_id,
        remote_id=remote_id,
        email="user7@example.com",
        plan_slug="pro",
        status="active",
        valid_from=None,
        valid_until=valid_until,
        key_prefix=None,
        key_last4=None,
    )


def test_normalize_snapshot_item_resolves_field_aliases() -> None:
    item = normalize_snapshot_item(
        {
            "api_key_id": 11,
            "wp_user_id": "7",
            "external_subscription_id": "sub-b",
            "email": "User7@Example.com",
            "plan": "Pro Plan",
            "status": "ACTIVE",
            "valid_to": 1767225600,
            "key": "ks_live_abcdefgh1234",
        }
    )
    assert item.remote_id == "11"
    assert item.owner_id == "7"
    assert item.subscription_id == "sub-b"
    assert item.email == "user7@example.com"
    assert item.plan_slug == "pro-plan"
    assert item.valid_until == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert item.key_prefix == "ks_live_ab"
    assert item.key_last4 == "1234"
    assert item.unstable_reason == ""


def test_free_plan_gets_a_synthetic_subscription() -> None:
    item = normalize_snapshot_item({"owner_id": "9", "plan_slug": "free", "status": "active", "valid_from": "2026-01-01"})
    assert item.subscription_id == "free-9"
    assert item.has_stable_id


def test_unstable_reasons() -> None:
    assert normalize_snapshot_item({"owner_id": "1", "plan_slug": "pro"}).unstable_reason == "missing_identifiers"
    assert (
        normalize_snapshot_item({"id": 3, "owner_id": "1", "subscription_id": "s-3", "status": "active", "valid_from": "2026-01-01"}).unstable_reason
        == "missing_plan_slug"
    )
    assert (
        normalize_snapshot_item({"id": 3, "owner_id": "1", "subscription_id": "s-3", "status": "active", "plan_slug": "pro"}).unstable_reason
        == "missing_validity"
    )
    # Inactive rows only need the owner and subscription pair.
    assert normalize_snapshot_item({"id": 3, "owner_id": "1", "subscription_id": "s-3", "status": "disabled"}).unstable_reason == ""


def test_rows_missing_either_half_of_the_pair_are_unstable() -> None:
    without_owner = normalize_snapshot_item({"id": 5, "subscription_id": "sub-a", "status": "disabled"})
    without_subscription = normalize_snapshot_item({"id": 5, "owner_id": "7", "status": "disabled"})
    assert not without_owner.has_stable_id
    assert without_owner.unstable_reason == "missing_identifiers"
    assert not without_subscription.has_stable_id
    assert without_subscription.unstable_reason == "missing_identifiers"


def test_select_winner_prefers_highest_numeric_remote_id() -> None:
    ten = _item("10", subscription_id="sub-a")
    eleven = _item("11", subscription_id="sub-b")
    assert select_winner(select_winner(None, ten), eleven) is eleven
    assert select_winner(select_winner(None, eleven), ten) is eleven
    assert select_winner(_item("9"), _item("10")).remote_id == "10"


def test_select_winner_without_remote_ids_prefers_explicit_validity() -> None:
    open_ended = _item()
    bounded = _item(valid_until=datetime(2030, 1, 1, tzinfo=timezone.utc))
    assert select_winner(open_ended, bounded) is bounded
    assert select_winner(bounded, open_ended) is bounded
    assert select_winner(_item(), _item(subscription_id="s-2")).subscription_id == "s-1"


def test_select_winner_prefers_items_carrying_a_remote_id() -> None:
    assert select_winner(_item(), _item("5")).remote_id == "5"
    assert select_winner(_item("5"), _item()).remote_id == "5"


def test_pagination_metadata_precedence() -> None:
    assert has_more_pages({"has_more": True}, page=1, per_page=50, item_count=1) is True
    assert has_more_pages({"has_more": False}, page=1, per_page=1, item_count=1) is False
    assert has_more_pages({"total_pages": 3}, page=2, per_page=50, item_count=1) is True
    assert has_more_pages({"total_pages": 3}, page=3, per_page=1, item_count=1) is False
    assert has_more_pages([{}, {}], page=1, per_page=2, item_count=2) is True
    assert has_more_pages({"items": []}, page=1, per_page=2, item_count=0) is False


def test_items_from_body_accepts_known_envelopes() -> None:
    assert items_from_body([{"id": 1}]) == [{"id": 1}]
    assert items_from_body({"items": [{"id": 1}]}) == [{"id": 1}]
    assert items_from_body({"data": [{"id": 2}]}) == [{"id": 2}]
    assert items_from_body({"unexpected": True}) == []
