"""
Import workflow management.

This module drives an import session from upload through analysis, mapping
review, preview and approval to execution, deciding at each step whether the
session may advance on its own or needs a human decision.
"""
