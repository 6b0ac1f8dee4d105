"""
                ChefStudio Ads Connection Service

Backend component that tracks each restaurant's Meta Ads connection
and gates every advertising operation on a freshly verified credential.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
