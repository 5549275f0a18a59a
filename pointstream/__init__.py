"""
PointStream — adaptive hierarchical tile streaming for large point clouds

- Fetches a tileset hierarchy once per session (POST /tileset)
- Each evaluation round scores tiles against the viewpoint, picks the top-K
  not yet resident and fetches them concurrently (GET /tiles/{ref})
- Optional host surface: /viewpoint, /evaluate, /tiles, /stats, /health
"""
