"""
Admin panel access control for the task marketplace.
"""
__version__ = "0.1.0"
