"""Image generation backends, media storage and shot rendering."""
