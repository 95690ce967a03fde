"""
Worker module.
Runs batches of due jobs through their processors.
"""
