"""fleetnode - install the edge agent on a node and register it with the exchange.

Key responsibilities:
- Detect and validate the platform (Linux distro/codename/arch or macOS)
- Resolve node settings from flags, environment and the agent-install.cfg file
- Install, upgrade or downgrade the agent package
- Tear down a previous registration when required, then create and register the node
"""

__version__ = "1.1.0"
