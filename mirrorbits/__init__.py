"""Building blocks of a geographic download redirector: configuration, Redis storage, clustering, statistics and logs."""

__version__ = "0.1.0"