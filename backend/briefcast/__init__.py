"""Briefcast episode audio assembly.

Turns independently rendered speech chunks plus optional music stings into one
loudness-consistent episode file.
"""

__version__ = "0.4.0"
