import os

# Unit tests run without Redis; metrics and the durable store stay disabled
os.environ["REDIS_URL"] = ""
os.environ.setdefault("TMDB_API_KEY", "test-tmdb-key")
os.environ.setdefault("OMDB_API_KEY", "test-omdb-key")
