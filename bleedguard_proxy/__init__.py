"""HTTPS gate that checks hosts for Heartbleed before letting requests through."""
