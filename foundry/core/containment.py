"""Path-permission policy applied to every planned write before execution.

Rules are matched by priority (highest first).  Immutable security rules
(priority ≥ 90) cannot be removed and always win, even inside the project
root.  Extra rules can be loaded from a YAML file::

    rules:
      - pattern: "/srv/shared/**"
        permission: read-write
        reason: Shared fixtures
        priority: 50
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel

from foundry.core.logging import get_logger
from foundry.tools.filesystem import match_glob

logger = get_logger("core.containment")

PermissionLevel = Literal["deny", "read", "write", "read-write"]
Operation = Literal["read", "write"]

DANGEROUS_PRIORITY = 90


class PathPermission(BaseModel):
    pattern: str
    permission: PermissionLevel
    reason: str = ""
    priority: int = 0
    immutable: bool = False

    @property
    def dangerous(self) -> bool:
        return self.immutable and self.priority >= DANGEROUS_PRIORITY


class PermissionResult(BaseModel):
    allowed: bool
    reason: str = ""
    matched_rule: PathPermission | None = None
    can_override: bool = False

    @property
    def critical(self) -> bool:
        """A denial that no user or task override may lift."""
        return not self.allowed and not self.can_override


def _deny(pattern: str, reason: str) -> PathPermission:
    return PathPermission(pattern=pattern, permission="deny", reason=reason, priority=100, immutable=True)


IMMUTABLE_RULES: tuple[PathPermission, ...] = (
    _deny("**/.env", "Environment secrets"),
    _deny("**/.env.*", "Environment secrets"),
    _deny("**/credentials*", "Credentials file"),
    _deny("**/secrets*", "Secrets file"),
    _deny("**/*.key", "Private key file"),
    _deny("**/*.pem", "Certificate/key file"),
    _deny("**/*.p12", "Certificate file"),
    _deny("**/*_rsa", "RSA private key"),
    _deny("**/*_dsa", "DSA private key"),
    _deny("**/*_ed25519", "ED25519 private key"),
    _deny("~/.ssh/**", "SSH keys directory"),
    _deny("**/id_rsa*", "SSH private key"),
    _deny("**/id_dsa*", "SSH private key"),
    _deny("**/id_ed25519*", "SSH private key"),
    _deny("**/.npmrc", "NPM config (may contain tokens)"),
    _deny("**/.pypirc", "PyPI config (may contain tokens)"),
    PathPermission(
        pattern="**/.git/**", permission="read",
        reason="Git internals (config may contain tokens)", priority=90, immutable=True,
    ),
)


class ContainmentPolicy:
    """Decides whether the orchestrator may write a given path."""

    def __init__(
        self,
        project_root: str | Path,
        rules: list[PathPermission] | None = None,
        default_permission: PermissionLevel = "deny",
        enabled: bool = True,
        allow_task_overrides: bool = True,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.default_permission = default_permission
        self.enabled = enabled
        self.allow_task_overrides = allow_task_overrides
        self._user_rules: list[PathPermission] = [r for r in (rules or []) if not r.immutable]
        self._sorted: list[PathPermission] = []
        self._resort()

    @classmethod
    def from_yaml(cls, project_root: str | Path, path: str | Path | None) -> ContainmentPolicy:
        """Build a policy, adding user rules from *path* when it exists."""
        if not path:
            return cls(project_root)
        resolved = Path(path).expanduser()
        if not resolved.exists():
            logger.warning("Containment rules not found at %s; using built-in rules only", resolved)
            return cls(project_root)

        raw = yaml.safe_load(resolved.read_text(encoding="utf-8")) or {}
        raw_rules = raw.get("rules", [])
        if not isinstance(raw_rules, list):
            raise ValueError(f"{resolved}: 'rules' must be a list, got {type(raw_rules)}")

        rules: list[PathPermission] = []
        for i, item in enumerate(raw_rules):
            if not isinstance(item, dict):
                raise ValueError(f"{resolved}: rule {i} must be a mapping, got {type(item)}")
            try:
                rules.append(PathPermission(**item))
            except Exception as exc:
                raise ValueError(f"{resolved}: invalid rule {i} ({item!r}): {exc}") from exc

        logger.info("Loaded %d containment rule(s) from %s", len(rules), resolved)
        return cls(project_root, rules=rules)

    # ── Rules ─────────────────────────────────────────────────────────

    @property
    def rules(self) -> list[PathPermission]:
        return list(self._sorted)

    def add_rule(self, rule: PathPermission) -> None:
        if rule.immutable:
            raise ValueError("Immutable rules cannot be added at runtime")
        self._user_rules.append(rule)
        self._resort()

    def remove_rule(self, pattern: str) -> bool:
        """Remove a user rule by pattern. Immutable rules are never removed."""
        before = len(self._user_rules)
        self._user_rules = [r for r in self._user_rules if r.pattern != pattern]
        self._resort()
        return len(self._user_rules) < before

    def _resort(self) -> None:
        self._sorted = sorted(
            [*IMMUTABLE_RULES, *self._user_rules], key=lambda r: r.priority, reverse=True
        )

    # ── Checks ────────────────────────────────────────────────────────

    def check_permission(self, path: str, operation: Operation = "write") -> PermissionResult:
        if not self.enabled:
            return PermissionResult(allowed=True, reason="Containment disabled")

        absolute = self._absolute(path)
        inside, candidate = self._match_target(absolute)

        dangerous = self._dangerous_match(candidate, absolute, operation)
        if dangerous is not None:
            logger.warning("Containment DENY %s %s; %s", operation, path, dangerous.reason)
            return PermissionResult(
                allowed=False,
                reason=dangerous.reason or "Dangerous file pattern",
                matched_rule=dangerous,
                can_override=False,
            )

        if inside:
            return PermissionResult(allowed=True, reason="Within project root")

        rule = self._find_rule(candidate, absolute)
        if rule is not None:
            allowed = _permits(rule.permission, operation)
            return PermissionResult(
                allowed=allowed,
                reason=rule.reason or f"Matched pattern: {rule.pattern}",
                matched_rule=rule,
                can_override=self.allow_task_overrides and not rule.dangerous,
            )

        return PermissionResult(
            allowed=_permits(self.default_permission, operation),
            reason=f"Default permission: {self.default_permission}",
            can_override=self.allow_task_overrides,
        )

    def _absolute(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    def _match_target(self, absolute: Path) -> tuple[bool, str]:
        try:
            return True, absolute.relative_to(self.project_root).as_posix()
        except ValueError:
            return False, absolute.as_posix()

    def _dangerous_match(self, candidate: str, absolute: Path, operation: Operation) -> PathPermission | None:
        for rule in self._sorted:
            if not rule.dangerous or _permits(rule.permission, operation):
                continue
            if match_glob(candidate, rule.pattern) or match_glob(absolute.as_posix(), rule.pattern):
                return rule
        return None

    def _find_rule(self, candidate: str, absolute: Path) -> PathPermission | None:
        for rule in self._sorted:
            if match_glob(candidate, rule.pattern) or match_glob(absolute.as_posix(), rule.pattern):
                return rule
        return None


def _permits(permission: PermissionLevel, operation: Operation) -> bool:
    if permission == "deny":
        return False
    if permission == "read-write":
        return True
    return permission == operation
