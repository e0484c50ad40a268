"""
Job machinery: lifecycles, the in-process work queue and the document and
session pipelines that drive the external model.
"""
