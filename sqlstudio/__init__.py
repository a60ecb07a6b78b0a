"""SQLStudio - natural language to SQL agent for relational databases."""

__version__ = "0.1.0"
