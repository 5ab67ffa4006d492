"""The devlog daemon: queue drain, decay and promotion, and their scheduler."""
