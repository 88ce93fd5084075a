from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

DEFAULT_PREFIX = "{GLOBALCHANNEL}"

DEFAULTS = {
    # Store
    "database": "default",
    "db_path": None,
    "pool_size": 10,
    # Keyspace
    "prefix": DEFAULT_PREFIX,
    "clean_on_startup": False,
    "scan_count": 100,
    # Remote invocation
    "channel_layer": "default",
    "rpc_prefix": "rpc",
    "rpc_timeout": 5.0,
}


def get_config(**overrides):
    """
    Build the registry configuration.

    Values come from DEFAULTS, then the GLOBAL_CHANNEL Django setting, then
    the keyword overrides.
    """
    config = dict(DEFAULTS)
    config.update(get_settings())
    config.update(overrides)

    unknown = set(config) - set(DEFAULTS)
    if unknown:
        raise ImproperlyConfigured(
            f"Unknown GLOBAL_CHANNEL options: {', '.join(sorted(unknown))}"
        )
    if not config["prefix"]:
        raise ImproperlyConfigured("GLOBAL_CHANNEL prefix must not be empty")
    if config["scan_count"] < 1:
        raise ImproperlyConfigured("GLOBAL_CHANNEL scan_count must be positive")
    return config


def get_settings():
    try:
        return dict(settings.GLOBAL_CHANNEL)
    except (AttributeError, ImproperlyConfigured):
        # Setting absent, or Django settings not configured at all
        return {}
