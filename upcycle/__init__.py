"""
Upcycle generation service: materials text in, DIY projects out, with an
embedding-similarity cache in front of the text-generation backend.
"""
