"""
nft-apply - Guarded nftables configuration apply with automatic rollback.

Provides a safe way to change a firewall ruleset on a remote machine:
- Dry-run validation of the candidate ruleset before anything changes
- Snapshot of the live ruleset taken before mutation
- Operator confirmation window with a hard timeout
- Automatic restoration of the snapshot when confirmation does not arrive
- Temporary suspension of the intrusion-prevention service during the window
"""

__version__ = "1.0.0"
__author__ = "nft-apply contributors"
