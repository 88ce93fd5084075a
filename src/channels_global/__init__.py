from .service import GlobalChannelService, create_service

__all__ = ["GlobalChannelService", "create_service"]
