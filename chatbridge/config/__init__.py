from chatbridge.config.loader import Config, get_config

__all__ = ["Config", "get_config"]
