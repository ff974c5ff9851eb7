"""
API Routes Module

Exposes all route modules for registration in the control-plane app.
routes_openai is served by the proxy listener instead.
"""
from . import routes_proxy
from . import routes_providers
from . import routes_accounts
from . import routes_oauth
from . import routes_logs
from . import routes_config
from . import routes_mapping
from . import routes_events
from . import routes_openai

__all__ = [
    "routes_proxy",
    "routes_providers",
    "routes_accounts",
    "routes_oauth",
    "routes_logs",
    "routes_config",
    "routes_mapping",
    "routes_events",
    "routes_openai",
]
