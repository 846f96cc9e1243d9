"""ServerPilot — single-host operator dashboard core.

Manages:
  - The registered command table (the only way to spawn a subprocess)
  - Plugin directory at ./plugins and its .registry.json
  - Enable / disable / configure / uninstall of plugins at runtime
  - Marketplace install from a remote archive
"""

__version__ = "0.4.0"
