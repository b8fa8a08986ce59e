"""panefleet: stable worker addressing over tmux panes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
