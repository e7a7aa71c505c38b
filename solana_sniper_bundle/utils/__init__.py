# solana_sniper_bundle/utils/__init__.py
