"""chatvault: import, index and merge ChatGPT data exports."""

__version__ = "0.3.0"
