import pytest

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import InvalidInsightError, UnknownInsightError
from insight_pipeline.ledger.dedup import compute_dedup_key, identity_fields_from_config
from insight_pipeline.ledger.extraction_ledger import ExtractionLedger, parse_insight_type
from insight_pipeline.schemas import InsightType, SourceRef

JOURNEY = {
    "persona": "Field Engineer",
    "workflow_type": "Incident triage",
    "solution": "Shared runbook",
    "summary": "Engineers copy steps from old tickets.",
}


def _ref(start: int, end: int, chunk: str = "advisory-1#0000") -> SourceRef:
    return SourceRef(source_id="advisory-1", start_line=start, end_line=end, chunk_id=chunk)


@pytest.fixture
def ledger(store: ProgressStore) -> ExtractionLedger:
    return ExtractionLedger(store)


def test_same_insight_twice_collapses_to_one_record(ledger: ExtractionLedger) -> None:
    first = ledger.submit("UserJourney", JOURNEY, _ref(1, 300))
    second = ledger.submit("UserJourney", JOURNEY, _ref(281, 580, "advisory-1#0001"))

    assert first.created and not second.created
    assert first.insight.id == second.insight.id == "UJ-001"
    assert [(r.start_line, r.end_line) for r in second.insight.source_refs] == [(1, 300), (281, 580)]
    assert ledger.count(InsightType.USER_JOURNEY) == 1


def test_dedup_ignores_case_punctuation_and_spacing(ledger: ExtractionLedger) -> None:
    ledger.submit("UserJourney", JOURNEY, _ref(1, 300))
    variant = {
        "persona": "field   engineer!",
        "workflow_type": "incident-triage",
        "solution": "SHARED RUNBOOK.",
        "summary": "different free text does not matter",
    }

    result = ledger.submit("UJ", variant, _ref(281, 580))

    assert not result.created
    assert result.insight.id == "UJ-001"
    assert result.insight.fields["summary"] == JOURNEY["summary"]


def test_different_identity_creates_next_sequential_id(ledger: ExtractionLedger) -> None:
    ledger.submit("UserJourney", JOURNEY, _ref(1, 300))
    other = ledger.submit("UserJourney", {**JOURNEY, "solution": "Chat bot"}, _ref(1, 300))

    assert other.created
    assert other.insight.id == "UJ-002"


def test_ids_are_numbered_per_type(ledger: ExtractionLedger) -> None:
    ledger.submit("UserJourney", JOURNEY, _ref(1, 300))
    ti = ledger.submit("TechnicalInsight", {"title": "Ticket sync lag", "component": "PSA"}, _ref(1, 300))
    st = ledger.submit("StrategicTheme", {"category": "Retention", "title": "Self-service"}, _ref(1, 300))

    assert ti.insight.id == "TI-001"
    assert st.insight.id == "ST-001"


def test_same_fields_under_another_type_stay_distinct(ledger: ExtractionLedger) -> None:
    fields = {"title": "Renewal risk", "category": "Revenue", "component": "Billing"}

    ti = ledger.submit("TechnicalInsight", fields, _ref(1, 300))
    st = ledger.submit("StrategicTheme", fields, _ref(1, 300))

    assert ti.created and st.created


def test_missing_identity_field_is_rejected(ledger: ExtractionLedger) -> None:
    with pytest.raises(InvalidInsightError) as exc_info:
        ledger.submit("UserJourney", {"persona": "Analyst", "solution": "  ..  "}, _ref(1, 300))

    assert exc_info.value.details["missing"] == ["workflow_type", "solution"]
    assert ledger.count("UserJourney") == 0


def test_unknown_type_is_rejected(ledger: ExtractionLedger) -> None:
    with pytest.raises(InvalidInsightError):
        ledger.submit("Anecdote", JOURNEY, _ref(1, 300))


def test_parse_insight_type_accepts_value_prefix_and_name() -> None:
    assert parse_insight_type("TechnicalInsight") is InsightType.TECHNICAL_INSIGHT
    assert parse_insight_type("TI") is InsightType.TECHNICAL_INSIGHT
    assert parse_insight_type("TECHNICAL_INSIGHT") is InsightType.TECHNICAL_INSIGHT


def test_ledger_survives_reopen(store: ProgressStore, store_dir) -> None:
    ExtractionLedger(store).submit("UserJourney", JOURNEY, _ref(1, 300))

    reopened = ExtractionLedger(ProgressStore(store_dir))
    again = reopened.submit("UserJourney", JOURNEY, _ref(281, 580))
    new = reopened.submit("UserJourney", {**JOURNEY, "persona": "Dispatcher"}, _ref(281, 580))

    assert again.insight.id == "UJ-001"
    assert len(again.insight.source_refs) == 2
    assert new.insight.id == "UJ-002"


def test_list_filters_and_hides_retired(ledger: ExtractionLedger) -> None:
    old = ledger.submit("UserJourney", JOURNEY, _ref(1, 300)).insight
    new = ledger.submit("UserJourney", {**JOURNEY, "solution": "Runbook v2"}, _ref(1, 300)).insight
    ledger.retire(old.id, by_id=new.id)

    assert [i.id for i in ledger.list("UserJourney")] == [new.id]
    assert [i.id for i in ledger.list("UserJourney", include_retired=True)] == [old.id, new.id]
    assert ledger.get(old.id).retired_by == new.id
    assert ledger.list(filters={"solution": "Runbook v2"})[0].id == new.id
    assert ledger.list(filters={"solution": "nothing"}) == []


def test_get_unknown_insight(ledger: ExtractionLedger) -> None:
    with pytest.raises(UnknownInsightError):
        ledger.get("UJ-999")


def test_identity_fields_are_configurable(store: ProgressStore) -> None:
    ledger = ExtractionLedger(store, {"identity_fields": {"TechnicalInsight": ["title"]}})

    a = ledger.submit("TechnicalInsight", {"title": "Sync lag", "component": "PSA"}, _ref(1, 300))
    b = ledger.submit("TechnicalInsight", {"title": "sync lag", "component": "CRM"}, _ref(281, 580))

    assert a.insight.id == b.insight.id


def test_identity_fields_config_rejects_unknown_type() -> None:
    with pytest.raises(InvalidInsightError):
        identity_fields_from_config({"identity_fields": {"Anecdote": ["title"]}})


def test_dedup_key_is_stable() -> None:
    fields = ("persona", "workflow_type", "solution")

    k1 = compute_dedup_key(InsightType.USER_JOURNEY, JOURNEY, fields)
    k2 = compute_dedup_key(InsightType.USER_JOURNEY, dict(reversed(list(JOURNEY.items()))), fields)

    assert k1 == k2
    assert len(k1) == 64
