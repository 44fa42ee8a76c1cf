import pytest

from sync_worker.services.preprocessing.rules import apply_rules_to_event, evaluate_rule
from sync_worker.services.preprocessing.tags import get_or_create_tag, link_tag

EVENT = {
    "id": "evt-1",
    "event_type": "email",
    "subject": "Invoice #42 for Acme",
    "body_text": "Please pay by Friday",
    "metadata": {"from": "billing@acme.com", "to": ["me@contoso.com", "ops@contoso.com"]},
    "projects": [],
    "importance": None,
}


def rule(**overrides):
    base = {
        "id": "rule-1",
        "user_id": "user-1",
        "name": "Invoices",
        "is_enabled": True,
        "priority": 0,
        "match_field": "subject",
        "match_operator": "contains_any",
        "match_values": ["invoice"],
        "add_tags": [],
        "add_projects": [],
        "set_importance": None,
        "match_count": 0,
    }
    base.update(overrides)
    return base


@pytest.mark.parametrize("field,operator,values,expected", [
    ("subject", "contains_any", ["receipt", "INVOICE"], True),
    ("subject", "contains", ["invoice", "acme"], True),
    ("subject", "contains", ["invoice", "globex"], False),
    ("subject", "equals", ["invoice #42 for acme"], True),
    ("subject", "starts_with", ["invoice"], True),
    ("subject", "ends_with", ["acme"], True),
    ("from", "from_domain", ["@acme.com"], True),
    ("from", "from_domain", ["globex.com"], False),
    ("to", "contains_any", ["ops@"], True),
    ("body_text", "contains_any", ["friday"], True),
    ("any", "contains_any", ["billing@"], True),
    ("subject", "regex", ["invoice"], False),
    ("headers", "contains_any", ["invoice"], False),
    ("subject", "contains_any", ["  "], False),
])
def test_evaluate_rule(field, operator, values, expected):
    assert evaluate_rule(rule(match_field=field, match_operator=operator, match_values=values), EVENT) is expected


def test_meeting_organizer_counts_as_from():
    meeting = {"subject": "Sync", "metadata": {"organizer": "boss@acme.com"}}

    assert evaluate_rule(rule(match_field="from", match_operator="from_domain", match_values=["acme.com"]), meeting)


@pytest.mark.asyncio
async def test_matching_rule_tags_and_updates_event(fake_supabase):
    fake_supabase.seed("events", dict(EVENT))
    fake_supabase.seed("rules", rule(add_tags=["finance"], add_projects=["Q2"], set_importance=3))

    matched = await apply_rules_to_event(fake_supabase, "evt-1", "user-1")

    assert matched == ["rule-1"]
    event = fake_supabase.rows("events")[0]
    assert event["projects"] == ["Q2"]
    assert event["importance"] == 3
    (tag,) = fake_supabase.rows("tags")
    assert tag["name"] == "finance"
    (link,) = fake_supabase.rows("event_tags")
    assert (link["event_id"], link["tag_id"]) == ("evt-1", tag["id"])
    assert fake_supabase.rows("rules")[0]["match_count"] == 1
    assert fake_supabase.rows("rules")[0]["last_matched_at"]


@pytest.mark.asyncio
async def test_rules_never_touch_identity_columns(fake_supabase):
    fake_supabase.seed("events", dict(EVENT, external_id="<42@acme>", source="microsoft_graph"))
    fake_supabase.seed("rules", rule(add_projects=["Q2"]))

    await apply_rules_to_event(fake_supabase, "evt-1", "user-1")

    event = fake_supabase.rows("events")[0]
    assert (event["event_type"], event["external_id"], event["source"]) == ("email", "<42@acme>", "microsoft_graph")


@pytest.mark.asyncio
async def test_only_enabled_rules_of_the_user_apply(fake_supabase):
    fake_supabase.seed("events", dict(EVENT))
    fake_supabase.seed("rules", rule(id="disabled", is_enabled=False))
    fake_supabase.seed("rules", rule(id="other-user", user_id="user-2"))
    fake_supabase.seed("rules", rule(id="miss", match_values=["newsletter"]))

    assert await apply_rules_to_event(fake_supabase, "evt-1", "user-1") == []


@pytest.mark.asyncio
async def test_rules_apply_in_priority_order(fake_supabase):
    fake_supabase.seed("events", dict(EVENT))
    fake_supabase.seed("rules", rule(id="low", priority=1))
    fake_supabase.seed("rules", rule(id="high", priority=9))

    assert await apply_rules_to_event(fake_supabase, "evt-1", "user-1") == ["high", "low"]


@pytest.mark.asyncio
async def test_failed_action_does_not_stop_later_rules(fake_supabase):
    fake_supabase.seed("events", dict(EVENT))
    fake_supabase.seed("rules", rule(id="first", priority=9, set_importance=5))
    fake_supabase.seed("rules", rule(id="second", priority=1, add_tags=["finance"]))
    fake_supabase.fail("events", "update")

    matched = await apply_rules_to_event(fake_supabase, "evt-1", "user-1")

    assert matched == ["first", "second"]
    assert len(fake_supabase.rows("event_tags")) == 1


@pytest.mark.asyncio
async def test_missing_event_matches_nothing(fake_supabase):
    fake_supabase.seed("rules", rule())

    assert await apply_rules_to_event(fake_supabase, "nope", "user-1") == []


def test_tag_creation_is_idempotent(fake_supabase):
    first = get_or_create_tag(fake_supabase, "finance")
    second = get_or_create_tag(fake_supabase, "finance")

    assert first == second
    assert len(fake_supabase.rows("tags")) == 1


def test_tag_create_failure_returns_none(fake_supabase):
    fake_supabase.fail("tags", "insert")

    assert get_or_create_tag(fake_supabase, "finance") is None


def test_tag_create_race_rereads(fake_supabase, monkeypatch):
    original_execute = fake_supabase._execute

    def concurrent_insert(query):
        if query.table == "tags" and query.op == "insert":
            fake_supabase.seed("tags", {"id": "t-race", "name": "finance"})
        return original_execute(query)

    monkeypatch.setattr(fake_supabase, "_execute", concurrent_insert)

    assert get_or_create_tag(fake_supabase, "finance") == "t-race"


def test_linking_twice_keeps_one_row(fake_supabase):
    assert link_tag(fake_supabase, "evt-1", "finance")
    assert link_tag(fake_supabase, "evt-1", "finance")

    assert len(fake_supabase.rows("event_tags")) == 1
