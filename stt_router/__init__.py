"""
STT Router Microservice

Speech-segment orchestration: voice activity events in, one transcription
backend per captured segment, normalized transcripts out.
"""

__version__ = "1.0.0"
