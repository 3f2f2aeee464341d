"""
Analytics: worker threads, their manager and LLM section scoring.
"""
