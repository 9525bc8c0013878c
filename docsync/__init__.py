"""Local documentation cache kept in sync with its upstream source."""

__version__ = '0.1.0'
