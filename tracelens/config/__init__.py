from .settings import QuerySettings, Settings, SourceToggles, get_openai_api_key

__all__ = ["QuerySettings", "Settings", "SourceToggles", "get_openai_api_key"]
