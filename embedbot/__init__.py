"""
Embed Bot

Link-preview media pipeline for chat bots:
- Fetches linked content with size and time bounds
- Probes and transcodes it into chat-friendly thumbnails and clips
- Deduplicates identical sources through a persistent content-addressed cache
- Publishes results to the Matrix media repository
"""

__title__ = "embedbot"
__description__ = "Link-preview media pipeline for chat bots"
__license__ = "MIT"
__version__ = "0.1.0"

# Avoid importing heavy submodules at package import time to keep tests lightweight
