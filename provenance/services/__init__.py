"""
Hashing, collaborator adapters and the verification/registration services.
"""

from .fingerprint import *
from .image_hash import *
