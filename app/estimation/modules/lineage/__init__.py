"""
Proposal lineage: quotations, their revision chain, the project created from the latest
approved revision, and the project's variation chain.

Entry points are the functions in `service`; everything else is building blocks.
"""
