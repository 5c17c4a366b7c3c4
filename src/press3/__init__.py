"""
press3: publish orchestration for a page registry on Sui with content on Walrus.

Pages are uploaded to the blob network, then registered or updated in the
on-ledger registry in a single atomic transaction. See press3.publish.
"""

__version__ = "0.1.0"
