"""Communication orchestration core: templates, channel selection and journeys."""

__version__ = "0.1.0"
