"""
FormPilot - Browser Layer
Page snapshots, the execution backend protocol, and the tools built on it.
"""
