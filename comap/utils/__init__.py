"""Utility functions for the map optimization core"""
