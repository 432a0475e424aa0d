"""
PDF Tool Suite - freemium PDF processing backend
"""

__version__ = "1.0.0"
