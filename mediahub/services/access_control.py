"""Policy-based authorization for storage operations on media assets."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Iterable, Mapping

from ..config import get_settings

logger = logging.getLogger(__name__)


class StorageAction(str, Enum):
    READ = "storage:read"
    LIST = "storage:list"
    WRITE = "storage:write"
    DELETE = "storage:delete"
    CONFIGURE = "storage:configure"
    MANAGE_POLICIES = "storage:manage_policies"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


# Condition kinds understood by the evaluator.
OWNERSHIP = "ownership"
ROLE = "role"
SIZE_LIMIT = "size_limit"


@dataclass(frozen=True)
class AccessPolicy:
    resource: str
    action: str
    effect: PolicyEffect
    conditions: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, resource: str, action: str) -> bool:
        if self.resource == "*":
            resource_ok = True
        elif self.resource.endswith("*"):
            resource_ok = resource.startswith(self.resource[:-1])
        else:
            resource_ok = self.resource == resource
        return resource_ok and self.action in ("*", action)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None


def default_policies(max_upload_size: int | None = None) -> list[AccessPolicy]:
    """Ordered policies installed on every new controller."""

    size_limit = max_upload_size or 10 * 1024 * 1024
    return [
        AccessPolicy("images/*", StorageAction.READ.value, PolicyEffect.ALLOW, {OWNERSHIP: True}),
        AccessPolicy(
            "images/*",
            StorageAction.WRITE.value,
            PolicyEffect.ALLOW,
            {OWNERSHIP: True, SIZE_LIMIT: size_limit},
        ),
        AccessPolicy("images/*", StorageAction.DELETE.value, PolicyEffect.ALLOW, {OWNERSHIP: True}),
        AccessPolicy("*", "*", PolicyEffect.ALLOW, {ROLE: "admin"}),
        AccessPolicy("images/*", StorageAction.READ.value, PolicyEffect.ALLOW, {ROLE: "moderator"}),
        AccessPolicy("system/*", "*", PolicyEffect.DENY, {ROLE: ["user", "moderator"]}),
    ]


class PolicyStore:
    """Ordered, instance-owned list of access policies."""

    def __init__(self, policies: Iterable[AccessPolicy] | None = None) -> None:
        self._policies: list[AccessPolicy] = list(policies or [])

    def __iter__(self):
        return iter(list(self._policies))

    def __len__(self) -> int:
        return len(self._policies)

    def add(self, policy: AccessPolicy) -> None:
        self._policies.append(policy)

    def remove(self, resource: str, action: str) -> int:
        """Drop every policy registered for ``(resource, action)``; return how many."""

        before = len(self._policies)
        self._policies = [p for p in self._policies if not (p.resource == resource and p.action == action)]
        return before - len(self._policies)

    def applicable(self, resource: str, action: str) -> list[AccessPolicy]:
        return [policy for policy in self._policies if policy.matches(resource, action)]


def is_owned_by(resource: str, actor_id: str, owner_id: str | None = None) -> bool:
    """Return True when ``actor_id`` owns ``resource``.

    An ``owner_id`` looked up by the caller wins; without it ownership is read
    from the key layout (``images/{owner}_...`` or ``.../{owner}/...``).
    """

    if not actor_id:
        return False
    if owner_id is not None:
        return str(owner_id) == str(actor_id)
    if not resource.rsplit("/", 1)[-1]:
        return False
    return f"/{actor_id}/" in resource or resource.startswith(f"images/{actor_id}_")


class AccessController:
    def __init__(self, store: PolicyStore | None = None) -> None:
        self._store = store if store is not None else PolicyStore(default_policies())

    @property
    def policies(self) -> list[AccessPolicy]:
        return list(self._store)

    def add_policy(self, policy: AccessPolicy) -> None:
        self._store.add(policy)

    def remove_policy(self, resource: str, action: str) -> int:
        return self._store.remove(resource, action)

    async def check_permission(
        self,
        actor_id: str,
        role: str,
        action: str,
        resource: str,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """First applicable policy whose conditions hold decides; otherwise deny."""

        facts = dict(context or {})
        facts.update(actor_id=actor_id, role=role, resource=resource)
        for policy in self._store.applicable(resource, action):
            if self._conditions_hold(policy.conditions, facts):
                return policy.effect == PolicyEffect.ALLOW
        return False

    def _conditions_hold(self, conditions: Mapping[str, Any], facts: Mapping[str, Any]) -> bool:
        for kind, expected in conditions.items():
            if kind == OWNERSHIP:
                if expected and not is_owned_by(facts["resource"], facts["actor_id"], facts.get("owner_id")):
                    return False
            elif kind == ROLE:
                if isinstance(expected, (list, tuple, set, frozenset)):
                    if facts["role"] not in expected:
                        return False
                elif facts["role"] != expected:
                    return False
            elif kind == SIZE_LIMIT:
                file_size = facts.get("file_size")
                if file_size and file_size > expected:
                    return False
            else:
                logger.warning("Unknown policy condition %r; denying", kind)
                return False
        return True


class AccessMiddleware:
    """Maps upload/download/delete requests onto storage resources and actions."""

    def __init__(self, controller: AccessController | None = None) -> None:
        self.controller = controller or AccessController()

    async def validate_access(
        self,
        actor_id: str,
        role: str,
        action: StorageAction | str,
        resource: str,
        context: Mapping[str, Any] | None = None,
    ) -> AccessDecision:
        action_value = action.value if isinstance(action, StorageAction) else action
        try:
            allowed = await self.controller.check_permission(actor_id, role, action_value, resource, context)
        except Exception as exc:
            logger.exception("Access evaluation failed for %s on %s", action_value, resource)
            return AccessDecision(False, f"Access validation error: {exc}")
        if not allowed:
            return AccessDecision(False, f"Access denied: insufficient permissions for {action_value} on {resource}")
        return AccessDecision(True)

    async def validate_upload(
        self,
        actor_id: str,
        role: str,
        file_name: str,
        file_size: int,
        content_type: str,
    ) -> AccessDecision:
        resource = f"images/{actor_id}_{file_name}"
        return await self.validate_access(
            actor_id,
            role,
            StorageAction.WRITE,
            resource,
            {"file_size": file_size, "content_type": content_type, "file_name": file_name},
        )

    async def validate_download(
        self, actor_id: str, role: str, resource_key: str, *, owner_id: str | None = None
    ) -> AccessDecision:
        context = {"owner_id": owner_id} if owner_id is not None else None
        return await self.validate_access(actor_id, role, StorageAction.READ, resource_key, context)

    async def validate_delete(
        self, actor_id: str, role: str, resource_key: str, *, owner_id: str | None = None
    ) -> AccessDecision:
        context = {"owner_id": owner_id} if owner_id is not None else None
        return await self.validate_access(actor_id, role, StorageAction.DELETE, resource_key, context)


@lru_cache(maxsize=1)
def get_access_middleware() -> AccessMiddleware:
    settings = get_settings()
    return AccessMiddleware(AccessController(PolicyStore(default_policies(settings.upload_max_file_size))))


__all__ = [
    "StorageAction",
    "PolicyEffect",
    "AccessPolicy",
    "AccessDecision",
    "PolicyStore",
    "AccessController",
    "AccessMiddleware",
    "default_policies",
    "is_owned_by",
    "get_access_middleware",
    "OWNERSHIP",
    "ROLE",
    "SIZE_LIMIT",
]
