"""
PointStream Test Suite

Structure:
- unit/: tests for the hierarchy model, estimator, traverser, scheduler, executor and transport
- integration/: streaming sessions end to end, including the HTTP host surface
- fakes.py: in-memory transport, renderer and viewpoint doubles
"""
