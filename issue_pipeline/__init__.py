"""issue-pipeline: drive issues through a multi-stage agent pipeline."""

__version__ = "0.1.0"
