from reels_factory.api.routes import router

__all__ = ["router"]
