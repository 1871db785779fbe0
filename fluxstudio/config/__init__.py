from fluxstudio.config.config import Config

__all__ = ["Config"]
