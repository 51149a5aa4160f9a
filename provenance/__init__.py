"""
Image Provenance - Verification Decision Pipeline

Anchors image fingerprints to an external ledger and detects derivative
images through perceptual similarity before falling back to an AI-origin
classification oracle.
"""

__version__ = "1.0.0"
__author__ = "Image Provenance Team"
__description__ = "Image provenance verification and registration"
