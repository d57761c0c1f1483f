"""Reply formatting: markdown dialects and length-aware splitting."""
