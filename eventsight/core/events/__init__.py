"""PostHog event access, session windowing and profile rendering."""
