"""
Per-request cache policy evaluation.

An Evaluator decides whether a cached response may satisfy a request
(retrievable) and whether a response may be written to the cache (storable).
Validators are run in order until one of them reports a decision.
"""

from typing import Callable, Iterable, List, Optional, TYPE_CHECKING

from . import validators

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..models import CachePolicy, RequestDescriptor, ResponseDescriptor


Validator = Callable[[object, "Evaluator"], bool]


class WriteOnceFlag:
    """Tri-state flag (unset / True / False) that ignores every write after the first."""

    __slots__ = ("_value",)

    def __init__(self):
        self._value: Optional[bool] = None

    @property
    def is_set(self) -> bool:
        return self._value is not None

    @property
    def value(self) -> Optional[bool]:
        return self._value

    def set(self, flag: bool = True) -> bool:
        """Set the flag once; returns the effective value."""
        if self._value is None:
            self._value = bool(flag)
        return self._value

    def __repr__(self) -> str:
        return f"WriteOnceFlag({self._value!r})"


class Evaluator:
    """Cache policy decision engine for a single request."""

    def __init__(
        self,
        store_private: bool = False,
        store_no_store: bool = False,
        ignore_no_last_mod: bool = False,
        cache_unauthorized: bool = False,
        request_validators: Optional[Iterable[Validator]] = None,
        response_validators: Optional[Iterable[Validator]] = None,
    ):
        self.store_private = store_private
        self.store_no_store = store_no_store
        self.ignore_no_last_mod = ignore_no_last_mod
        self.cache_unauthorized = cache_unauthorized
        self.request_validators: List[Validator] = list(request_validators or [])
        self.response_validators: List[Validator] = list(response_validators or [])
        self._retrievable = WriteOnceFlag()
        self._storable = WriteOnceFlag()

    @classmethod
    def for_request(
        cls,
        request: "RequestDescriptor",
        policy: Optional["CachePolicy"] = None,
        cache_unauthorized: bool = False,
    ) -> "Evaluator":
        """Build an evaluator; request-level validators run before host-level ones."""
        if policy is None:
            return cls(
                cache_unauthorized=cache_unauthorized,
                request_validators=request.request_validators,
                response_validators=request.response_validators,
            )
        return cls(
            store_private=policy.store_private,
            store_no_store=policy.store_no_store,
            ignore_no_last_mod=policy.ignore_no_last_mod,
            cache_unauthorized=policy.cache_unauthorized or cache_unauthorized,
            request_validators=list(request.request_validators) + list(policy.request_validators),
            response_validators=list(request.response_validators) + list(policy.response_validators),
        )

    @property
    def retrievable(self) -> Optional[bool]:
        return self._retrievable.value

    @property
    def storable(self) -> Optional[bool]:
        return self._storable.value

    def flag_retrievable(self, flag: bool = True) -> bool:
        return self._retrievable.set(flag)

    def flag_storable(self, flag: bool = True) -> bool:
        return self._storable.set(flag)

    def is_retrievable(self, request: "RequestDescriptor") -> bool:
        """Run request validators (once) and report retrievability."""
        if not self._retrievable.is_set:
            self._run(self.request_validators + validators.REQUEST_VALIDATORS, request)
        return bool(self._retrievable.value)

    def is_storable(self, response: "ResponseDescriptor") -> bool:
        """Run response validators (once) and report storability."""
        if not self._storable.is_set:
            self._run(self.response_validators + validators.RESPONSE_VALIDATORS, response)
        return bool(self._storable.value)

    def _run(self, chain: List[Validator], subject: object) -> None:
        for validator in chain:
            if validator(subject, self):
                return
