"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~ado_npm.exceptions.AdoNpmError` subclass.
Shell wrappers can inspect the exit code to tell a rejected sign-in from an
unreachable registry without parsing stderr.

Example::

    $ ado-npm auth -r contoso/ux
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- sign-in timed out or was rejected
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""A required option was missing or a registry value could not be parsed."""

EXIT_AUTH_FAILURE = 3
"""Interactive sign-in or token acquisition failed."""

EXIT_TRANSPORT_ERROR = 5
"""A registry or Azure DevOps endpoint answered with an unexpected status or body."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_INTERRUPTED = 130
"""The user pressed Ctrl-C."""
