"""Message templates — per-recipient placeholder rendering."""
from templates.renderer import RenderedMessage, render, substitute

__all__ = ["RenderedMessage", "render", "substitute"]
