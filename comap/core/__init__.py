"""
Core map model, camera models and optimization procedures
"""
