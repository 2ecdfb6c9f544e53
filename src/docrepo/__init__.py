"""docrepo — generic domain-to-persistence repository layer."""

__version__ = "0.1.0"
