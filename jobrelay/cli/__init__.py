"""Job Relay command line interface"""
