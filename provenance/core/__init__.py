"""
Core infrastructure modules for errors, the similarity index and its persistence.
"""

from .errors import *
from .utils import *
