"""Provision, customize, and run vTPM-backed confidential VM images."""

__version__ = '0.1.0'
