from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

from keeper.storage.models import AccountType

Abilities = Dict[str, List[str]]


@dataclass(frozen=True)
class Ability:
    name: str
    scope: str = ""


def superadmin_ability(username: str) -> Ability:
    return Ability(name="superadmin", scope=username)


def admin_ability(username: str) -> Ability:
    return Ability(name="admin", scope=username)


def authorized_ability(username: str) -> Ability:
    return Ability(name="user", scope=username)


_ROLE_FACTORIES: Dict[AccountType, Callable[[str], Ability]] = {
    AccountType.ADMIN: admin_ability,
    AccountType.SUPERADMIN: superadmin_ability,
}


def role_for(account_type: AccountType) -> Callable[[str], Ability]:
    """Return the ability factory for an account type.

    Anything that is not admin or superadmin gets the authorized-user ability.
    """
    return _ROLE_FACTORIES.get(account_type, authorized_ability)


def to_abilities(*items: Ability) -> Abilities:
    """Aggregate abilities into ``{name: [scope, ...]}``.

    An ability with an empty scope still registers its name.
    """
    result: Abilities = {}
    for ability in items:
        scopes = result.setdefault(ability.name, [])
        if ability.scope and ability.scope not in scopes:
            scopes.append(ability.scope)
    return result


def abilities_for(account_type: AccountType, username: str) -> Abilities:
    return to_abilities(role_for(account_type)(username))


__all__ = [
    "Abilities",
    "Ability",
    "superadmin_ability",
    "admin_ability",
    "authorized_ability",
    "role_for",
    "to_abilities",
    "abilities_for",
]
