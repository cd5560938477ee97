"""Host inspection: platform, privileges and the installed agent binary."""
