"""Polling scheduler and CLI entry point"""
