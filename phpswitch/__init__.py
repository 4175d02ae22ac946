"""phpswitch: switch between Homebrew-installed PHP versions."""

__version__ = "1.0.0"
