"""
Omnistore - one command surface over relational, document, key-value and
search engines.

Callers build a ``Credential``, hand it to an ``Engine`` and get normalized
``QueryResult`` / ``MutationResult`` objects back, whichever engine answers.
"""

__version__ = "0.1.0"

from omnistore.core import *  # noqa
