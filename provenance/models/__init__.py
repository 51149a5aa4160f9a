"""
Pydantic models for registration records and verification outcomes.
"""
