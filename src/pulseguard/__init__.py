"""PulseGuard - vital-sign monitoring with guaranteed alert analysis.

Ingests periodic vital-sign readings, classifies their severity, and makes
sure every alert reading eventually receives a structured analysis from an
external classification service, retrying through a durable queue when that
service is slow or unavailable.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
