"""VM-side planning and lifecycle: mounts, socket forwards, templates and sessions."""
