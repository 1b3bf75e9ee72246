"""
Test Suite Initialization

Knowledge engine test configuration.
"""
