"""
jpdatrack - multi-target state estimation and Joint Probabilistic Data Association.
"""

__version__ = "0.1.0"
