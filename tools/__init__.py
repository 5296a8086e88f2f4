"""Operational tooling (configuration loading and validation)"""
