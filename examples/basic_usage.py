"""
shardvault: Basic Usage Example

Stores a few API keys for two owners, reads them back, shows that owners
cannot see each other's keys, and cleans up. The master secret here is
generated on the fly; a real application loads it from its own secret
source and keeps it for the life of the process.
"""

import asyncio
import logging
import os
import shutil

from shardvault import NotFoundError, VaultConfig, VaultService


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 50)
    print("  shardvault: Sharded Credential Vault")
    print("=" * 50)

    config = VaultConfig(vault_dir="./example-vault")
    vault = VaultService(os.urandom(32), config)

    # Store: derive keys → split into shards → encrypt each → disk
    openai_id = await vault.store(1, "openai", "sk-ABCDEF1234", description="prod key")
    github_id = await vault.store(1, "github", "ghp_0123456789")
    other_id = await vault.store(2, "stripe", "sk_live_abcdef")

    print("\nOwner 1 records:")
    for summary in await vault.list(1):
        print(f"  {summary.record_id}  {summary.service_name:<8} {summary.created_at}")

    shard_names = sorted(p.name for p in config.shard_dir.iterdir())
    print(f"\n{len(shard_names)} encrypted shard files on disk, e.g. {shard_names[0]}")

    secret = await vault.retrieve(1, openai_id)
    print(f"\nRetrieved owner 1 / openai: {secret.decode()}")

    print("\nOwner 2 asking for owner 1's key...")
    try:
        await vault.retrieve(2, openai_id)
        print("  ERROR: Should have failed!")
    except NotFoundError:
        print("  Correctly rejected, indistinguishable from a missing record")

    for owner, record_id in ((1, openai_id), (1, github_id), (2, other_id)):
        await vault.delete(owner, record_id)

    stats = await vault.stats()
    print(f"\nAfter delete: {stats['records']} records, {stats['shard_files']} shard files")

    shutil.rmtree("./example-vault", ignore_errors=True)
    print("\nCleaned up example files.")


if __name__ == "__main__":
    asyncio.run(main())
