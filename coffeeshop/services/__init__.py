"""
Application services: task queue and product mutations.
"""
