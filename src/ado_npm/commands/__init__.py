"""Built-in ado-npm commands, registered on the root app by :mod:`ado_npm.app`."""
