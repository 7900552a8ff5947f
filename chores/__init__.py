"""
Maintenance job bodies scheduled by caretaker.
"""
