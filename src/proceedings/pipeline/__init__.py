"""Attribution and topic pipeline.

Speaker assignment, resegmentation, consolidation and topic analysis,
orchestrated by TranscriptPipeline.
"""
