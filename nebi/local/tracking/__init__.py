"""Read-side logic over the stores.

- **drift**: Classify spec files against their origin (sidecar, index entry or snapshot)
- **resolver**: Workspace argument resolution (cwd, path, tracked name, spec:tag)
- **repair**: Reconcile the index with sidecars found on disk
- **diff**: Unified diffs between directories, snapshots and server versions
"""
