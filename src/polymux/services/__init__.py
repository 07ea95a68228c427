"""Core services for Polymux"""
