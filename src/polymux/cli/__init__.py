"""Polymux command line interface"""
