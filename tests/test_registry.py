import logging
from pathlib import Path

import pytest

from taskforge.errors import RegistryLoadError
from taskforge.models import PriorityClass
from taskforge.registry import load_registry, registry_from_dict


def _worker(worker_id: str, domain: str, owns: list[str], **extra) -> dict:
    return {
        "id": worker_id,
        "owns": owns,
        "capabilities": [{"domain": domain, "keywords": extra.pop("keywords", [])}],
        **extra,
    }


def test_bundled_registry_loads_full_roster() -> None:
    registry = load_registry()

    ids = [worker.id for worker in registry.workers]
    assert ids[0] == "frontend-specialist"
    assert "laravel-specialist" in ids
    assert "security-auditor" in ids
    assert "test-engineer" in ids
    assert registry.get("generalist-engineer").priority == PriorityClass.GENERALIST
    assert registry.precedence[0] == "test-engineer"


def test_lookup_preserves_declaration_order() -> None:
    registry = load_registry()

    backend = [worker.id for worker in registry.lookup("Backend")]

    assert backend == [
        "backend-specialist",
        "laravel-specialist",
        "database-architect",
        "generalist-engineer",
    ]
    assert registry.lookup("quantum") == []


def test_ownership_patterns_of_unknown_worker_raises() -> None:
    registry = load_registry()

    assert "tests/**" in registry.ownership_patterns_of("test-engineer")
    with pytest.raises(KeyError):
        registry.ownership_patterns_of("nobody")


def test_overlapping_ownership_without_precedence_is_rejected() -> None:
    data = {
        "workers": [
            _worker("ui", "frontend", ["src/**"]),
            _worker("styles", "frontend", ["src/**/*.css"]),
        ]
    }

    with pytest.raises(RegistryLoadError) as excinfo:
        registry_from_dict(data)

    assert excinfo.value.worker_ids == ("ui", "styles")


def test_declared_precedence_resolves_overlap() -> None:
    data = {
        "precedence": ["styles", "ui"],
        "workers": [
            _worker("ui", "frontend", ["src/**"]),
            _worker("styles", "frontend", ["src/**/*.css"]),
        ],
    }

    registry = registry_from_dict(data)

    assert registry.owner_of("src/theme/main.css") == "styles"
    assert registry.owner_of("src/app.tsx") == "ui"
    assert registry.owner_of("docs/index.md") is None


def test_warn_policy_logs_and_falls_back_to_declaration_order(
    caplog: pytest.LogCaptureFixture,
) -> None:
    data = {
        "workers": [
            _worker("ui", "frontend", ["src/**"]),
            _worker("styles", "frontend", ["src/**/*.css"]),
        ]
    }

    with caplog.at_level(logging.WARNING, logger="taskforge.registry"):
        registry = registry_from_dict(data, overlap_policy="warn")

    assert "without a declared precedence" in caplog.text
    assert registry.owner_of("src/theme/main.css") == "ui"


def test_warn_policy_ranks_partial_precedence_before_declaration_order(
    caplog: pytest.LogCaptureFixture,
) -> None:
    data = {
        "precedence": ["styles"],
        "workers": [
            _worker("ui", "frontend", ["src/**"]),
            _worker("styles", "frontend", ["src/**/*.css"]),
        ],
    }

    with caplog.at_level(logging.WARNING, logger="taskforge.registry"):
        registry = registry_from_dict(data, overlap_policy="warn")

    assert "listed first in precedence, then to the one declared first" in caplog.text
    assert registry.owner_of("src/theme/main.css") == "styles"


def test_disjoint_ownership_needs_no_precedence() -> None:
    registry = registry_from_dict(
        {
            "workers": [
                _worker("ui", "frontend", ["**/*.tsx"]),
                _worker("styles", "frontend", ["**/*.css"]),
            ]
        }
    )

    assert len(registry) == 2


@pytest.mark.parametrize(
    "data",
    [
        {"workers": []},
        {"workers": [_worker("a", "x", []), _worker("a", "y", [])]},
        {"workers": [{"id": "a", "capabilities": []}]},
        {"workers": [{"id": "a", "priority": "boss", "capabilities": [{"domain": "x"}]}]},
        {"precedence": ["ghost"], "workers": [_worker("a", "x", [])]},
    ],
)
def test_invalid_registries_fail_at_load(data: dict) -> None:
    with pytest.raises(RegistryLoadError):
        registry_from_dict(data)


def test_explicit_mention_matches_id_and_handle_only() -> None:
    registry = load_registry()

    assert registry.is_explicit_mention("Have backend-specialist add paging", "backend-specialist")
    assert registry.is_explicit_mention("@backend please add paging", "backend-specialist")
    assert not registry.is_explicit_mention("Add backend paging", "backend-specialist")
    assert not registry.is_explicit_mention("Use my-backend-specialist-fork", "backend-specialist")
    assert not registry.is_explicit_mention("anything", "nobody")


def test_active_list_restricts_registry() -> None:
    registry = load_registry(active=["frontend-specialist", "test-engineer"])

    assert [worker.id for worker in registry.workers] == [
        "frontend-specialist",
        "test-engineer",
    ]
    assert registry.precedence == ("test-engineer", "frontend-specialist")

    with pytest.raises(RegistryLoadError):
        load_registry(active=["ghost"])


def test_load_registry_from_file(tmp_path: Path) -> None:
    path = tmp_path / "workers.toml"
    path.write_text(
        """
[[workers]]
id = "writer"
owns = ["docs/**"]
aliases = ["docs"]

[[workers.capabilities]]
domain = "Documentation"
keywords = ["README"]
""",
        encoding="utf-8",
    )

    registry = load_registry(path)
    worker = registry.get("writer")

    assert worker.domains == ("documentation",)
    assert worker.keywords_for("documentation") == ("readme",)
    assert registry.to_dict()["workers"][0]["owns"] == ["docs/**"]


def test_load_registry_reports_bad_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    broken.write_text("[[workers]\n", encoding="utf-8")

    with pytest.raises(RegistryLoadError):
        load_registry(broken)
    with pytest.raises(RegistryLoadError):
        load_registry(tmp_path / "missing.toml")
