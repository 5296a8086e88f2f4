"""Follow engine: detection, allocation, execution and exits"""
