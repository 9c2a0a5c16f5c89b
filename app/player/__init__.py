"""Player-side components: API client and headless player."""

from .client import ArticleApiClient, ArticleApiError
from .player import LoadedArticle, Player

__all__ = ["ArticleApiClient", "ArticleApiError", "LoadedArticle", "Player"]
