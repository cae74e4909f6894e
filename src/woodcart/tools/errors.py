"""Consistent error formatting and exit codes."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CartError(Exception):
    code: int
    short: str
    context: str
    next_step: str

    def __str__(self) -> str:
        return f"{self.short}: {self.context}"

    def format(self) -> str:
        return (
            f"ERROR [{self.code}]: {self.short}\n"
            f"  Context: {self.context}\n"
            f"  Next step: {self.next_step}\n"
        )


class AuthenticationError(CartError):
    """No session could be established."""


class MissingCredentials(AuthenticationError):
    pass


class LoginFlowError(AuthenticationError):
    pass


class VerificationError(AuthenticationError):
    pass


class SessionExpired(CartError):
    """The remote side rejected the session; the cached session is unusable."""


class MutationError(CartError):
    pass


class TransportError(MutationError):
    """Network-level failure (timeout, connection reset, 5xx). Retried once."""


class ApplicationRejection(MutationError):
    """The retailer answered and said no. Never retried."""


class ReconciliationError(CartError):
    pass


class PanelNotFound(ReconciliationError):
    pass


class ParseExhausted(ReconciliationError):
    pass


class ModeSwitchError(CartError):
    pass


class SetupRequired(CartError):
    pass


def missing_credentials() -> MissingCredentials:
    return MissingCredentials(
        code=2,
        short="Woodmans credentials missing",
        context="No username/password configured",
        next_step="Set username/password in data/settings.json or WOODMANS_EMAIL/WOODMANS_PASSWORD",
    )


def login_flow_failed(step: str, detail: str) -> LoginFlowError:
    return LoginFlowError(
        code=3,
        short="Login flow failed",
        context=f"{step}: {detail}",
        next_step="Check credentials, or re-run; the login page markup may have changed",
    )


def verification_failed(detail: str) -> VerificationError:
    return VerificationError(
        code=4,
        short="Login could not be verified",
        context=detail,
        next_step="Log in once in a normal browser to confirm the account works, then re-run",
    )


def session_expired(context: str = "Store rejected the session (401/403)") -> SessionExpired:
    return SessionExpired(
        code=5,
        short="Session expired",
        context=context,
        next_step="Re-run; a fresh login will be performed",
    )


def transport_failed(detail: str) -> TransportError:
    return TransportError(
        code=6,
        short="Network error",
        context=detail,
        next_step="Check the connection and re-run",
    )


def rejected(message: str) -> ApplicationRejection:
    return ApplicationRejection(
        code=7,
        short="Store rejected the request",
        context=message,
        next_step="Add the item manually or pick a different product",
    )


def panel_not_found(detail: str = "Could not find cart button.") -> PanelNotFound:
    return PanelNotFound(
        code=8,
        short="Cart panel not found",
        context=detail,
        next_step="Re-run with --verbose (or without --headless) to see what blocks the cart",
    )


def parse_exhausted(detail: str) -> ParseExhausted:
    return ParseExhausted(
        code=9,
        short="Cart contents could not be read",
        context=detail,
        next_step="The store's response format changed; re-capture it and update the parser",
    )


def mode_switch_failed(desired: str, actual: str) -> ModeSwitchError:
    return ModeSwitchError(
        code=10,
        short="Could not switch shopping mode",
        context=f"Wanted {desired}, store shows {actual}",
        next_step="Pick the mode manually on the storefront, then re-run",
    )


def browser_setup_required(detail: str) -> SetupRequired:
    return SetupRequired(
        code=11,
        short="Browser automation setup required",
        context=detail,
        next_step="Run: python -m playwright install chromium (then re-run)",
    )
