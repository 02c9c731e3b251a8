"""Game domain services: round protocol, ranking and the scoring seam.

Imported by HTTP routes and the lobby lifecycle; keeps transport concerns out
of core game mechanics.
"""
