"""
Service layer for the Accession Archiver.
"""

from .accessions import AccessionService

__all__ = ["AccessionService"]
