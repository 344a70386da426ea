from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from taskforge.errors import StackDetectionError

logger = logging.getLogger(__name__)

ALWAYS_ACTIVE = ("security-auditor", "test-engineer")


@dataclass(slots=True)
class StackProfile:
    frontend: list[str] = field(default_factory=list)
    backend: list[str] = field(default_factory=list)
    mobile: list[str] = field(default_factory=list)
    database: list[str] = field(default_factory=list)
    detected: bool = False

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "frontend": list(self.frontend),
            "backend": list(self.backend),
            "mobile": list(self.mobile),
            "database": list(self.database),
        }


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def detect_stack(root: Path) -> StackProfile:
    profile = StackProfile()

    package_json = root / "package.json"
    if package_json.is_file():
        profile.detected = True
        text = _read(package_json)
        if '"next"' in text:
            profile.frontend.append("Next.js")
        elif '"react"' in text:
            profile.frontend.append("React")
        elif '"vue"' in text:
            profile.frontend.append("Vue")
        if '"typescript"' in text or (root / "tsconfig.json").is_file():
            profile.frontend.append("TypeScript")
        if '"express"' in text:
            profile.backend.append("Express")
        elif '"fastify"' in text:
            profile.backend.append("Fastify")
        if '"react-native"' in text:
            profile.mobile.append("React Native")

    composer_json = root / "composer.json"
    if composer_json.is_file():
        profile.detected = True
        if '"laravel/framework"' in _read(composer_json):
            profile.backend.append("Laravel")

    python_text = ""
    for name in ("requirements.txt", "pyproject.toml"):
        candidate = root / name
        if candidate.is_file():
            profile.detected = True
            python_text += _read(candidate).lower()
    if "fastapi" in python_text:
        profile.backend.append("FastAPI")
    elif "django" in python_text:
        profile.backend.append("Django")
    elif "flask" in python_text:
        profile.backend.append("Flask")

    if (root / "go.mod").is_file():
        profile.detected = True
        profile.backend.append("Go")
    if (root / "Cargo.toml").is_file():
        profile.detected = True
        profile.backend.append("Rust")

    if (root / "pubspec.yaml").is_file():
        profile.detected = True
        profile.mobile.append("Flutter")
    if (root / "ios" / "Podfile").is_file() or (root / "android" / "build.gradle").is_file():
        profile.detected = True
        if "React Native" not in profile.mobile:
            profile.mobile.append("React Native")

    if (root / "prisma" / "schema.prisma").is_file():
        profile.database.append("Prisma")

    logger.debug("Detected stack in %s: %s", root, profile.to_dict())
    return profile


def recommend_workers(profile: StackProfile) -> list[str]:
    workers: list[str] = []
    if any(item in profile.frontend for item in ("Next.js", "React", "Vue")):
        workers.append("frontend-specialist")
    if "Laravel" in profile.backend:
        workers.append("laravel-specialist")
    elif any(
        item in profile.backend
        for item in ("Express", "Fastify", "FastAPI", "Django", "Flask", "Go", "Rust")
    ):
        workers.append("backend-specialist")
    if profile.mobile:
        workers.append("mobile-developer")
    if profile.database:
        workers.append("database-architect")
    workers.extend(ALWAYS_ACTIVE)
    return workers


def detect_workers(root: Path) -> tuple[StackProfile, list[str]]:
    profile = detect_stack(root)
    if not profile.detected:
        raise StackDetectionError(
            f"Could not detect a technology stack in {root}; expected one of "
            "package.json, composer.json, requirements.txt, pyproject.toml, go.mod, "
            "Cargo.toml, pubspec.yaml"
        )
    return profile, recommend_workers(profile)
