"""Dental insurance billing derivation and monthly UKE claim files."""
