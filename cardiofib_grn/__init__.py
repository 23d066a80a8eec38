"""
cardiofib_grn: Gene regulatory network inference for human cardiac
fibroblasts from unpaired snRNA-seq and snATAC-seq.

Analyses:
    1. coembedding  — CCA + Harmony co-embedding of RNA and ATAC cells
    2. clustering   — Leiden sub-clustering and cluster filtering
    3. pairing      — ATAC ↔ RNA cell matching (pseudo-multimodal cells)
    4. trajectory   — Diffusion pseudotime and smoothed trajectories
    5. tf_activity  — chromVAR motif deviations and TF selection
    6. peak2gene    — Peak-to-gene linkage along pseudotime
    7. network      — TF → gene network assembly and centrality
    8. pipeline     — End-to-end run from input objects to the GRN
"""

__version__ = "0.1.0"
