"""
Storage layer for Voice Chat Guard.

Data models exchanged with persistence collaborators and the repository
interfaces they implement.
"""
