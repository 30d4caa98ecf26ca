"""Target-centred 3x3 HiPS mosaic assembly, outputs and entry points."""
