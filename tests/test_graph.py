import pytest

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import CycleError, InvalidLinkError, UnknownInsightError
from insight_pipeline.graph.cross_reference import CrossReferenceGraph
from insight_pipeline.ledger.extraction_ledger import ExtractionLedger
from insight_pipeline.schemas import CrossReference, Relation, SourceRef

REF = SourceRef(source_id="advisory-1", start_line=1, end_line=300)


@pytest.fixture
def graph(store: ProgressStore) -> CrossReferenceGraph:
    ledger = ExtractionLedger(store)
    for title in ("Ticket sync lag", "Webhook retries", "Queue backlog", "Stale cache"):
        ledger.submit("TechnicalInsight", {"title": title, "component": "PSA"}, REF)
    return CrossReferenceGraph(store, ledger)


def test_depends_on_cycle_is_rejected(graph: CrossReferenceGraph) -> None:
    graph.link("TI-001", "TI-002", "depends_on")
    graph.link("TI-002", "TI-003", "depends_on")

    with pytest.raises(CycleError):
        graph.link("TI-003", "TI-001", "depends_on")

    assert len(list(graph.edges(Relation.DEPENDS_ON))) == 2


def test_cycle_check_only_applies_to_depends_on(graph: CrossReferenceGraph) -> None:
    graph.link("TI-001", "TI-002", "depends_on")

    edge = graph.link("TI-002", "TI-001", "relates_to")

    assert edge.relation == Relation.RELATES_TO


def test_self_links_are_rejected(graph: CrossReferenceGraph) -> None:
    with pytest.raises(CycleError):
        graph.link("TI-001", "TI-001", "depends_on")
    with pytest.raises(InvalidLinkError):
        graph.link("TI-001", "TI-001", "relates_to")


def test_relinking_same_triple_is_a_no_op(graph: CrossReferenceGraph) -> None:
    first = graph.link("TI-001", "TI-002", "relates_to", note="same outage")
    second = graph.link("TI-001", "TI-002", "relates_to", note="ignored")

    assert second == first
    assert len(list(graph.edges())) == 1


def test_link_requires_existing_insights(graph: CrossReferenceGraph) -> None:
    with pytest.raises(UnknownInsightError):
        graph.link("TI-001", "TI-404")


def test_neighbors_is_restartable(graph: CrossReferenceGraph) -> None:
    graph.link("TI-001", "TI-002", "relates_to")
    graph.link("TI-003", "TI-001", "depends_on")

    view = graph.neighbors("TI-001")

    assert list(view) == ["TI-002", "TI-003"]
    assert list(view) == ["TI-002", "TI-003"]
    assert list(graph.neighbors("TI-001", "depends_on", direction="in")) == ["TI-003"]
    assert list(graph.neighbors("TI-001", "depends_on", direction="out")) == []


def test_neighbors_view_sees_new_edges(graph: CrossReferenceGraph) -> None:
    view = graph.neighbors("TI-001", direction="out")
    assert list(view) == []

    graph.link("TI-001", "TI-004")

    assert list(view) == ["TI-004"]


def test_connected_component_follows_any_relation(graph: CrossReferenceGraph) -> None:
    graph.link("TI-001", "TI-002", "relates_to")
    graph.link("TI-003", "TI-002", "depends_on")

    assert graph.connected_component("TI-001") == ["TI-001", "TI-002", "TI-003"]
    assert graph.connected_component("TI-004") == ["TI-004"]


def test_supersedes_retires_target(graph: CrossReferenceGraph) -> None:
    graph.link("TI-002", "TI-001", "supersedes")

    retired = graph.ledger.get("TI-001")
    assert retired.retired
    assert retired.retired_by == "TI-002"
    assert "TI-001" not in [i.id for i in graph.ledger.list()]


def test_orphans_lists_unlinked_active_insights(graph: CrossReferenceGraph) -> None:
    graph.link("TI-001", "TI-002")

    assert graph.orphans() == ["TI-003", "TI-004"]


def test_edges_survive_reopen(graph: CrossReferenceGraph, store_dir) -> None:
    graph.link("TI-001", "TI-002", "depends_on")

    store = ProgressStore(store_dir)
    reopened = CrossReferenceGraph(store, ExtractionLedger(store))

    with pytest.raises(CycleError):
        reopened.link("TI-002", "TI-001", "depends_on")


def test_failed_supersede_can_be_retried(graph: CrossReferenceGraph, monkeypatch) -> None:
    retire = graph.ledger.retire
    failures = [OSError("disk full")]

    def flaky_retire(insight_id: str, by_id: str):
        if failures:
            raise failures.pop()
        return retire(insight_id, by_id=by_id)

    monkeypatch.setattr(graph.ledger, "retire", flaky_retire)

    with pytest.raises(OSError):
        graph.link("TI-002", "TI-001", "supersedes")
    assert list(graph.edges()) == []

    graph.link("TI-002", "TI-001", "supersedes")

    assert graph.ledger.get("TI-001").retired_by == "TI-002"
    assert len(list(graph.edges(Relation.SUPERSEDES))) == 1


def test_relinking_supersedes_retires_a_still_active_target(graph: CrossReferenceGraph) -> None:
    graph.store.cross_refs.append(
        CrossReference(from_id="TI-002", to_id="TI-001", relation=Relation.SUPERSEDES)
    )

    graph.link("TI-002", "TI-001", "supersedes")

    assert graph.ledger.get("TI-001").retired_by == "TI-002"
    assert len(list(graph.edges())) == 1
