"""
Database package for Guildkeeper.

Public API:
    - Database: owns the connection and one repository per table
    - Repository / Where: generic table access and predicates
    - ConnectionManager: the single long-lived aiosqlite connection
"""
