"""Exception hierarchy for ado-npm.

All exceptions inherit from :class:`AdoNpmError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`ado_npm.exit_codes`.
The top-level error handler in :func:`ado_npm.app.main` catches
``AdoNpmError``, prints the message and exits with that code, while
unexpected exceptions produce a crash log and exit with
:data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    AdoNpmError (exit 1)
    +-- ConfigError                 (exit 2)
    |   +-- MissingOptionError
    |   +-- InvalidRegistryError
    +-- AuthError                   (exit 3)
    |   +-- AuthTimeoutError
    |   +-- ProviderError
    |   +-- InvalidTokenResponseError
    +-- TransportError              (exit 5)
    |   +-- UnexpectedStatusError
    |   +-- InvalidResponseBodyError
    |   +-- NetworkError            (exit 6)
    +-- PackageManagerError         (exit = npm's exit code)

A state mismatch on the sign-in callback is deliberately absent: it is
logged by :mod:`ado_npm.login` and never raised.
"""

from __future__ import annotations

from ado_npm.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_TRANSPORT_ERROR,
)


class AdoNpmError(Exception):
    """Base exception for all ado-npm errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`ado_npm.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(AdoNpmError):
    """Raised for configuration problems (bad option values, invalid config file)."""

    exit_code = EXIT_INVALID_USAGE


class MissingOptionError(ConfigError):
    """Raised when a required option was given neither on the command line nor in config."""


class InvalidRegistryError(ConfigError):
    """Raised when a registry value is neither an ADO registry URL nor a short form."""


class AuthError(AdoNpmError):
    """Raised when interactive sign-in or token acquisition fails."""

    exit_code = EXIT_AUTH_FAILURE


class AuthTimeoutError(AuthError):
    """Raised when the browser did not complete sign-in before the timeout."""


class ProviderError(AuthError):
    """Raised when the identity provider or the PAT endpoint rejects a request."""


class InvalidTokenResponseError(AuthError):
    """Raised when a token endpoint answers without the expected tokens."""


class TransportError(AdoNpmError):
    """Base class for HTTP failures raised by :func:`ado_npm.client.request`."""

    exit_code = EXIT_TRANSPORT_ERROR


class UnexpectedStatusError(TransportError):
    """Raised when a response status is not in the accepted set.

    Args:
        message: Human-readable error description.
        status_code: The HTTP status that was received.
        url: The requested URL.
    """

    def __init__(self, message: str, status_code: int, url: str):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class InvalidResponseBodyError(TransportError):
    """Raised when a response body cannot be parsed into the expected shape."""


class NetworkError(TransportError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused)."""

    exit_code = EXIT_CONNECTION_ERROR


class PackageManagerError(AdoNpmError):
    """Raised when the ``npm`` subprocess exits non-zero.

    The exit code of ``npm`` is propagated as the exit code of ado-npm.
    """
