"""
HSM Session Lifecycle

One HSMSession is one command against the module:

    UNOPENED -> MODULE_LOADED -> AUTHENTICATED -> KEY_RESOLVED
             -> OPERATION_COMPLETE -> CLOSED | CLOSED_WITH_ERROR

The session and module handle are released on every exit path, and a
session object cannot be reopened or used for a second operation.
"""

from enum import Enum
from typing import Any

import pkcs11
import structlog
from pkcs11 import ObjectClass
from pkcs11.exceptions import (
    MultipleObjectsReturned,
    MultipleTokensReturned,
    NoSuchKey,
    NoSuchToken,
    PinExpired,
    PinIncorrect,
    PinInvalid,
    PinLenRange,
    PinLocked,
    PKCS11Error,
)

from .config import HSMConfig, public_label
from .errors import (
    AmbiguousKeyError,
    AuthenticationError,
    HSMError,
    KeyNotFoundError,
    ModuleLoadError,
    SessionStateError,
)

logger = structlog.get_logger()

PIN_ERRORS = (PinIncorrect, PinInvalid, PinLenRange, PinLocked, PinExpired)


class SessionState(Enum):
    """Lifecycle states of a single HSM command."""
    UNOPENED = "unopened"
    MODULE_LOADED = "module_loaded"
    AUTHENTICATED = "authenticated"
    KEY_RESOLVED = "key_resolved"
    OPERATION_COMPLETE = "operation_complete"
    CLOSED = "closed"
    CLOSED_WITH_ERROR = "closed_with_error"


# States in which keys may be looked up and primitives run
_OPERABLE = (SessionState.AUTHENTICATED, SessionState.KEY_RESOLVED)


class HSMSession:
    """
    Scoped, single-use session against a PKCS#11 token.

    Usage:
        with HSMSession(config, operation="sign") as hsm:
            key = hsm.private_key("MyRSAKey")
            signature = key.sign(message, mechanism=SIGNING_MECHANISM)
            hsm.complete()
    """

    def __init__(self, config: HSMConfig, operation: str = "session"):
        self._config = config
        self.operation = operation
        self._state = SessionState.UNOPENED
        self._lib: Any = None
        self._token: Any = None
        self._session: Any = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pkcs11_session(self) -> Any:
        """The authenticated pkcs11 session, for primitives that do not need a key."""
        self._require(*_OPERABLE)
        return self._session

    def __enter__(self) -> "HSMSession":
        if self._state != SessionState.UNOPENED:
            raise SessionStateError(
                "HSM sessions are single-use and cannot be reopened",
                operation=self.operation,
            )
        try:
            self._config.validate()
        except HSMError:
            self._state = SessionState.CLOSED_WITH_ERROR
            raise
        self._load_module()
        try:
            self._token = self._select_token()
            self._authenticate()
        except BaseException:
            self._release(failed=True)
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self._release(failed=exc_type is not None)
        return False

    def _transition(self, state: SessionState) -> None:
        logger.debug("session_state",
                     operation=self.operation,
                     previous=self._state.value,
                     state=state.value)
        self._state = state

    def _require(self, *states: SessionState) -> None:
        if self._state not in states:
            raise SessionStateError(
                f"Session is {self._state.value}; expected one of "
                f"{', '.join(s.value for s in states)}",
                operation=self.operation,
            )

    def _load_module(self) -> None:
        path = self._config.module_path
        try:
            self._lib = pkcs11.lib(path)
        except Exception as e:
            self._state = SessionState.CLOSED_WITH_ERROR
            raise ModuleLoadError(
                f"Cannot load PKCS#11 module at {path}: {e}",
                operation=self.operation,
            ) from e
        self._transition(SessionState.MODULE_LOADED)

    def _select_token(self) -> Any:
        """Pick the token by label, then by slot id, else the first present one."""
        config = self._config
        try:
            if config.token_label:
                return self._lib.get_token(token_label=config.token_label)

            slots = list(self._lib.get_slots(token_present=True))
            if config.slot is not None:
                slots = [s for s in slots if s.slot_id == config.slot]
            if not slots:
                where = f"slot {config.slot}" if config.slot is not None else "any slot"
                raise ModuleLoadError(
                    f"No token present in {where} of module {config.module_path}",
                    operation=self.operation,
                )
            return slots[0].get_token()
        except NoSuchToken as e:
            raise ModuleLoadError(
                f"No token labelled {config.token_label!r}",
                operation=self.operation,
            ) from e
        except MultipleTokensReturned as e:
            raise ModuleLoadError(
                f"More than one token labelled {config.token_label!r}",
                operation=self.operation,
            ) from e
        except PKCS11Error as e:
            raise ModuleLoadError(
                f"Cannot enumerate tokens: {type(e).__name__}",
                operation=self.operation,
            ) from e

    def _authenticate(self) -> None:
        try:
            self._session = self._token.open(user_pin=self._config.pin, rw=True)
        except PIN_ERRORS as e:
            raise AuthenticationError(
                f"PIN rejected by token ({type(e).__name__})",
                operation=self.operation,
            ) from e
        except PKCS11Error as e:
            raise AuthenticationError(
                f"Cannot open authenticated session ({type(e).__name__})",
                operation=self.operation,
            ) from e
        self._transition(SessionState.AUTHENTICATED)

    def _find_key(self, label: str, object_class: ObjectClass) -> Any:
        self._require(*_OPERABLE)
        kind = object_class.name.lower().replace("_", " ")
        try:
            key = self._session.get_key(object_class=object_class, label=label)
        except NoSuchKey as e:
            raise KeyNotFoundError(
                f"No {kind} labelled {label!r}",
                operation=self.operation,
                label=label,
            ) from e
        except MultipleObjectsReturned as e:
            raise AmbiguousKeyError(
                f"Label {label!r} matches more than one {kind}",
                operation=self.operation,
                label=label,
            ) from e
        logger.debug("key_resolved", operation=self.operation, label=label,
                     object_class=object_class.name)
        if self._state != SessionState.KEY_RESOLVED:
            self._transition(SessionState.KEY_RESOLVED)
        return key

    def private_key(self, label: str) -> Any:
        return self._find_key(label, ObjectClass.PRIVATE_KEY)

    def public_key(self, label: str) -> Any:
        """Resolve a public key by exact label, falling back to ``<label>-public``."""
        try:
            return self._find_key(label, ObjectClass.PUBLIC_KEY)
        except AmbiguousKeyError:
            raise
        except KeyNotFoundError:
            fallback = public_label(label)
            if fallback == label:
                raise
            return self._find_key(fallback, ObjectClass.PUBLIC_KEY)

    def has_key(self, label: str, object_class: ObjectClass) -> bool:
        """Whether any object of ``object_class`` carries exactly ``label``."""
        self._require(*_OPERABLE)
        try:
            self._session.get_key(object_class=object_class, label=label)
        except NoSuchKey:
            return False
        except MultipleObjectsReturned:
            return True
        return True

    def complete(self) -> None:
        """Mark the session's one operation as done; nothing else may run on it."""
        self._require(*_OPERABLE)
        self._transition(SessionState.OPERATION_COMPLETE)

    def _release(self, failed: bool) -> None:
        if self._session is not None:
            try:
                self._session.close()
            except Exception as e:
                # Never mask the error that is already propagating
                logger.warning("session_close_failed",
                               operation=self.operation,
                               error=str(e) or type(e).__name__)
            self._session = None
        self._token = None
        if self._lib is not None:
            # pkcs11.lib() caches loaded modules; unload finalizes and drops them
            try:
                pkcs11.unload(self._config.module_path)
            except Exception as e:
                logger.warning("module_unload_failed",
                               operation=self.operation,
                               error=str(e) or type(e).__name__)
            self._lib = None
        final = SessionState.CLOSED_WITH_ERROR if failed else SessionState.CLOSED
        if self._state not in (SessionState.CLOSED, SessionState.CLOSED_WITH_ERROR):
            self._transition(final)
