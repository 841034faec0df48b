"""
Stefna generation worker: job orchestration, credits and provider fallback
for AI photo / video restyling.
"""

__version__ = "0.4.0"
