"""compak core: manifests, dependency resolution, lockfile, installation."""
