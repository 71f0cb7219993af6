"""artiflow — streaming artifact extraction and chat persistence engine."""

__version__ = "0.1.0"
