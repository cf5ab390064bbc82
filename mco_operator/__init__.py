"""mco-operator is a reconciler for a multi-cluster observability stack.

A single `MultiClusterObservability` configuration object describes the
desired stack. The reconciler renders it into manifests, applies the deltas
against a resource store, distributes per-cluster work bundles to the clusters
chosen by a placement policy and reports health back as status conditions.

See the `reconciler` module for the top level entry point.
"""
