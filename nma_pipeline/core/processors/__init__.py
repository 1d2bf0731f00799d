"""
Stage processors, loaded by ps_type as nma_pipeline.core.processors.<ps_type>.
"""
