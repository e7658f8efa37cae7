"""
Dictation Service - clinical dictation processing microservice

A FastAPI-based service that stores voice recordings, transcribes them in
the background and turns finished transcripts into structured clinical notes.
"""

__version__ = "1.0.0"
