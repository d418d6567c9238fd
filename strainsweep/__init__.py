"""StrainSweep: Bootstrapped Group Abundance Estimation from Pseudoalignments.

Estimates the relative abundance of predefined reference groups (lineages,
strains, species) from pseudoaligned short reads by variational inference
over equivalence-class counts, with bootstrap resampling for uncertainty.
"""

__version__ = "1.0.0-dev"
