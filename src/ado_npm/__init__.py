"""ado-npm -- Authorize npm registries hosted on Azure DevOps.

This package signs the user in through the browser, mints one personal
access token (PAT) per Azure DevOps organization, and writes the tokens into
the user's ``~/.npmrc`` so that ``npm`` can install from private feeds.

Typical workflow::

    ado-npm auth --detect          # authorize every registry in ./.npmrc
    ado-npm auth -r contoso/ux     # authorize one feed
    ado-npm set -r contoso/ux      # remember a default registry

Modules:
    app: Typer application and CLI entry point.
    login: Loopback OAuth2 + PKCE authenticator.
    pat: Personal access token issuer.
    npm: Registry probing and authorization orchestration.
    store: Merge-on-save INI file store with single-flight loading.
    registry: Registry URL parsing.
    exceptions: Exception hierarchy with exit-code mapping.
"""

__version__ = "0.4.0"
