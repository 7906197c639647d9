"""
Medula e-pharmacy automation: CAPTCHA login, cache-first prescription fetch, report validity analysis.
"""

__version__ = "0.1.0"
