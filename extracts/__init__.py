"""Registry Extracts Worker

Automated ordering and download of real-estate registry extracts through an
authenticated portal session, with human-supplied verification codes.
"""

__version__ = "0.1.0"
