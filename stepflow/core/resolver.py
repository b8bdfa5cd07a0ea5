"""Scoped ``${scope.name}`` / ``${secret.name}`` placeholder resolution."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from ..models.core import Variable, VariableScope
from .exceptions import SecretResolutionError
from .logging import get_logger

logger = get_logger(__name__)

MASK = "••••••••"
SECRET_NAMESPACE = "secret"

PLACEHOLDER = re.compile(r'\$\{\s*([A-Za-z_][\w-]*)(?:\.([A-Za-z_][\w.-]*))?\s*\}')

# Highest precedence first
SCOPE_PRECEDENCE = (
    VariableScope.RUN,
    VariableScope.WORKFLOW,
    VariableScope.TENANT,
    VariableScope.SYSTEM,
)


class SecretStore(Protocol):
    """External decrypt collaborator."""

    def decrypt(self, ciphertext: str) -> str:
        ...


class FernetSecretStore:
    """Secret store backed by a Fernet key."""

    def __init__(self, key: Optional[str] = None):
        from cryptography.fernet import Fernet

        if key is None:
            key = Fernet.generate_key().decode()
            logger.warning("No secret key configured; generated an ephemeral Fernet key")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        from cryptography.fernet import InvalidToken

        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise SecretResolutionError("Secret ciphertext could not be decrypted")


@dataclass
class ResolvedConfig:
    """Outcome of one resolution pass.

    ``config`` carries plaintext secrets and must not outlive the step
    invocation; ``masked`` is safe to log and persist.
    """
    config: Dict[str, Any]
    masked: Dict[str, Any]
    unresolved: List[str] = field(default_factory=list)
    secret_values: Set[str] = field(default_factory=set)


class VariableResolver:
    """Resolves placeholders in step configuration at dispatch time.

    Variables are grouped by scope; an unscoped ``${name}`` is looked up
    by precedence (run > workflow > tenant > system). ``${secret.name}``
    decrypts through the secret store on every call and is never cached.
    Unknown placeholders are left untouched.
    """

    def __init__(self, variables: Optional[Iterable[Variable]] = None,
                 secret_store: Optional[SecretStore] = None):
        self._scopes: Dict[VariableScope, Dict[str, Variable]] = {scope: {} for scope in VariableScope}
        self._secrets: Dict[str, Variable] = {}
        self._secret_store = secret_store
        for variable in variables or []:
            self.add(variable)

    def add(self, variable: Variable) -> None:
        if variable.secret:
            # Secrets share one namespace; the narrower scope wins
            existing = self._secrets.get(variable.name)
            if existing is None or self._rank(variable.scope) <= self._rank(existing.scope):
                self._secrets[variable.name] = variable
        else:
            self._scopes[variable.scope][variable.name] = variable

    def with_variables(self, variables: Iterable[Variable]) -> "VariableResolver":
        """Copy of this resolver with additional variables layered on."""
        clone = VariableResolver(secret_store=self._secret_store)
        for scope, entries in self._scopes.items():
            clone._scopes[scope] = dict(entries)
        clone._secrets = dict(self._secrets)
        for variable in variables:
            clone.add(variable)
        return clone

    @staticmethod
    def _rank(scope: VariableScope) -> int:
        return SCOPE_PRECEDENCE.index(scope)

    def lookup(self, scope: Optional[str], name: str) -> Optional[Variable]:
        """Find a non-secret variable by explicit scope or precedence."""
        if scope is not None:
            try:
                return self._scopes[VariableScope(scope)].get(name)
            except ValueError:
                return None
        for candidate in SCOPE_PRECEDENCE:
            variable = self._scopes[candidate].get(name)
            if variable is not None:
                return variable
        return None

    def resolve(self, config: Dict[str, Any]) -> ResolvedConfig:
        """Substitute placeholders in every string of a nested config."""
        unresolved: List[str] = []
        secret_values: Set[str] = set()

        def _substitute(text: str) -> str:
            def _replace(match):
                head, tail = match.group(1), match.group(2)
                if head == SECRET_NAMESPACE and tail:
                    plaintext = self._decrypt(tail)
                    if plaintext is None:
                        unresolved.append(match.group(0))
                        return match.group(0)
                    secret_values.add(plaintext)
                    return plaintext

                if tail is None:
                    variable = self.lookup(None, head)
                elif head in VariableScope._value2member_map_:
                    variable = self.lookup(head, tail)
                else:
                    variable = self.lookup(None, f"{head}.{tail}")
                if variable is None:
                    unresolved.append(match.group(0))
                    return match.group(0)
                return _to_text(variable.value)

            return PLACEHOLDER.sub(_replace, text)

        def _walk(value: Any) -> Any:
            if isinstance(value, str):
                return _substitute(value)
            if isinstance(value, dict):
                return {key: _walk(item) for key, item in value.items()}
            if isinstance(value, list):
                return [_walk(item) for item in value]
            return value

        resolved = _walk(config or {})
        masked_config = mask_secrets(resolved, secret_values)
        unique = sorted(set(unresolved))
        if unique:
            logger.debug(f"Unresolved placeholders left in place: {', '.join(unique)}")
        return ResolvedConfig(
            config=resolved,
            masked=masked_config,
            unresolved=unique,
            secret_values=secret_values,
        )

    def _decrypt(self, name: str) -> Optional[str]:
        variable = self._secrets.get(name)
        if variable is None or self._secret_store is None:
            return None
        return self._secret_store.decrypt(str(variable.value))


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, default=str)


def mask_secrets(value: Any, secrets: Iterable[str]) -> Any:
    """Replace any occurrence of a secret value with the mask, recursively."""
    secrets = sorted((s for s in secrets if s), key=len, reverse=True)
    if not secrets:
        return value

    def _mask(item: Any) -> Any:
        if isinstance(item, str):
            for secret in secrets:
                item = item.replace(secret, MASK)
            return item
        if isinstance(item, dict):
            return {key: _mask(val) for key, val in item.items()}
        if isinstance(item, list):
            return [_mask(val) for val in item]
        return item

    return _mask(value)
