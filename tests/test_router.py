import pytest

from taskforge.errors import AmbiguousRoutingError, RoutingConflict
from taskforge.models import CapabilityRequest, Task
from taskforge.registry import load_registry
from taskforge.router import Router, first_keyword_match, specialist_over_generalist


def _task(
    description: str,
    domain: str,
    *,
    resources: list[str] | None = None,
    worker: str | None = None,
) -> Task:
    return Task(
        id="t1",
        description=description,
        capability=CapabilityRequest(domain=domain, worker=worker),
        resources=resources or [],
    )


@pytest.fixture
def router() -> Router:
    return Router(load_registry())


def test_specialist_preferred_over_generalist(router: Router) -> None:
    decision = router.explain(
        _task("Build the login page", "frontend", resources=["src/components/Login.tsx"])
    )

    assert decision.worker_id == "frontend-specialist"
    assert decision.rule == "specialist_over_generalist"
    assert decision.candidates == ("frontend-specialist", "generalist-engineer")


def test_explicit_mention_wins(router: Router) -> None:
    decision = router.explain(_task("Ask @backend to add pagination", "frontend"))

    assert decision.worker_id == "backend-specialist"
    assert decision.rule == "explicit_mention"


def test_several_mentions_without_capability_fall_through(router: Router) -> None:
    decision = router.explain(
        _task("Sync with security-auditor and project-planner on release notes", "documentation")
    )

    assert decision.worker_id == "documentation-writer"
    assert decision.rule == "specialist_over_generalist"
    assert decision.candidates == ("documentation-writer", "generalist-engineer")


def test_several_mentions_narrow_to_capable_worker(router: Router) -> None:
    decision = router.explain(
        _task("Pair documentation-writer with security-auditor on the guide", "documentation")
    )

    assert decision.worker_id == "documentation-writer"
    assert decision.rule == "explicit_mention"


def test_capability_override_selects_worker(router: Router) -> None:
    decision = router.explain(_task("Review this", "backend", worker="security-auditor"))

    assert decision.worker_id == "security-auditor"
    assert decision.rule == "explicit_mention"


def test_unknown_override_is_ambiguous(router: Router) -> None:
    with pytest.raises(AmbiguousRoutingError):
        router.route(_task("Review this", "backend", worker="ghost"))


def test_sole_capability_match(router: Router) -> None:
    decision = router.explain(_task("Roll out the release", "devops"))

    assert decision.worker_id == "devops-engineer"
    assert decision.rule == "capability_match"


def test_resource_ownership_breaks_specialist_tie(router: Router) -> None:
    decision = router.explain(_task("Add invoice routes", "backend", resources=["routes/web.php"]))

    assert decision.worker_id == "laravel-specialist"
    assert decision.rule == "resource_ownership"


def test_keyword_match_in_declaration_order(router: Router) -> None:
    decision = router.explain(_task("Add an Eloquent model for invoices", "backend"))

    assert decision.worker_id == "laravel-specialist"
    assert decision.rule == "keyword_match"


def test_resource_owned_by_other_worker_is_routing_conflict(router: Router) -> None:
    with pytest.raises(RoutingConflict) as excinfo:
        router.route(_task("Build the page", "frontend", resources=["api/users.py"]))

    assert excinfo.value.selected == "frontend-specialist"
    assert excinfo.value.owners == {"api/users.py": "backend-specialist"}
    assert excinfo.value.reason == "routing_conflict"


def test_no_capable_worker_is_ambiguous(router: Router) -> None:
    with pytest.raises(AmbiguousRoutingError) as excinfo:
        router.route(_task("Calibrate the qubits", "quantum"))

    assert "No registered worker" in str(excinfo.value)
    assert excinfo.value.reason == "ambiguous_routing"


def test_undecided_tie_is_ambiguous(router: Router) -> None:
    with pytest.raises(AmbiguousRoutingError) as excinfo:
        router.route(_task("Tidy things up", "backend"))

    assert excinfo.value.candidates == (
        "backend-specialist",
        "laravel-specialist",
        "database-architect",
    )


def test_routing_is_deterministic(router: Router) -> None:
    task = _task("Add an Eloquent model for invoices", "backend")

    assert {router.route(task) for _ in range(20)} == {"laravel-specialist"}


def test_rules_are_pure_functions() -> None:
    registry = load_registry()
    candidates = tuple(registry.lookup("frontend"))
    task = _task("Style the React page", "frontend")

    assert [worker.id for worker in specialist_over_generalist(task, candidates, registry)] == [
        "frontend-specialist"
    ]
    assert [worker.id for worker in first_keyword_match(task, candidates, registry)] == [
        "frontend-specialist"
    ]
    assert first_keyword_match(_task("Nothing relevant", "frontend"), candidates, registry) == ()
