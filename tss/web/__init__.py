from .app import WebApp

__all__ = ["WebApp"]
