"""
NMA stage processors.

Usage in pipeline:
    ps_type: nma.<stage_module>
"""
