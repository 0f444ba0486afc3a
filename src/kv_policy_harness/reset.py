"""
Environment Reset

Tears down what the harness created: policy assignments, harness-tagged
vaults (optionally purging them from soft-delete), the resource group and
old artifact directories.
"""

import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.resource import ResourceManagementClient

from .artifacts import RunContext
from .assigner import PolicyAssigner
from .settings import ARTIFACTS_DIR, TAG_RUN_ID


def clean_artifact_directories(artifacts_dir: str = ARTIFACTS_DIR, run_id: Optional[str] = None,
                               keep: Optional[str] = None) -> List[str]:
    """
    Delete run directories under the artifacts root.

    Args:
        artifacts_dir: Artifacts root
        run_id: Only delete this run's directory (default: all runs)
        keep: Run directory that is never deleted (the current run)

    Returns:
        Paths of the deleted directories
    """
    root = Path(artifacts_dir)
    if not root.exists():
        return []

    removed = []
    for path in sorted(root.iterdir()):
        if not path.is_dir() or path.name == keep:
            continue
        if run_id and path.name != run_id:
            continue
        shutil.rmtree(path)
        removed.append(str(path))
    return removed


class EnvironmentReset:
    """
    Removes harness resources from a resource group.

    Only vaults carrying the harness run-ID tag are touched, so other vaults
    in a shared resource group survive unless the whole group is deleted.
    """

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 resource_client=None, keyvault_client=None,
                 assigner: Optional[PolicyAssigner] = None,
                 confirm: Callable[[str], str] = input):
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.confirm = confirm

        self.resource_client = resource_client or ResourceManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.keyvault_client = keyvault_client or KeyVaultManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.assigner = assigner or PolicyAssigner(credential, subscription_id, resource_group)

    def harness_vaults(self, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Harness-tagged vaults in the resource group, optionally for one run."""
        try:
            vaults = list(self.keyvault_client.vaults.list_by_resource_group(self.resource_group))
        except ResourceNotFoundError:
            return []

        found = []
        for vault in vaults:
            tag = (vault.tags or {}).get(TAG_RUN_ID)
            if tag is None or (run_id and tag != run_id):
                continue
            found.append({
                'name': vault.name,
                'location': vault.location,
                'run_id': tag,
                'purge_protection': bool(vault.properties.enable_purge_protection),
            })
        return found

    def reset(self, context: RunContext, run_id: Optional[str] = None, purge: bool = False,
              delete_resource_group: bool = False, clean_artifacts: bool = False,
              assume_yes: bool = False, artifacts_dir: str = ARTIFACTS_DIR) -> Dict[str, Any]:
        """
        Remove harness resources.

        Args:
            context: Run context for the audit log
            run_id: Only remove vaults tagged with this run ID (default: all harness vaults)
            purge: Purge deleted vaults from soft-delete (purge-protected vaults are skipped)
            delete_resource_group: Delete the whole resource group afterwards
            clean_artifacts: Delete artifact directories of previous runs
            assume_yes: Skip the confirmation prompt

        Returns:
            Dictionary describing what was removed
        """
        context.current_state = "RESETTING"
        vaults = self.harness_vaults(run_id)

        print(f"\n{'='*70}")
        print(f"Resetting Key Vault test environment in {self.resource_group}")
        print(f"{'='*70}")
        print(f"  Vaults to delete: {len(vaults)}" + (f" (run {run_id})" if run_id else ""))
        for vault in vaults:
            note = " [purge protected]" if vault['purge_protection'] else ""
            print(f"    - {vault['name']}{note}")
        print(f"  Purge soft-deleted vaults: {'yes' if purge else 'no'}")
        print(f"  Delete resource group: {'yes' if delete_resource_group else 'no'}")
        print(f"  Clean artifacts: {'yes' if clean_artifacts else 'no'}")

        result = {
            'run_id': context.run_id,
            'resource_group': self.resource_group,
            'status': None,
            'assignments_removed': [],
            'vaults_deleted': [],
            'vaults_purged': [],
            'purge_skipped': [],
            'failures': [],
            'resource_group_deleted': False,
            'artifacts_removed': [],
        }

        if not assume_yes:
            answer = self.confirm("\nProceed with reset? This cannot be undone. (yes/no): ")
            if answer.strip().lower() != 'yes':
                print("  Reset cancelled.")
                result['status'] = 'CANCELLED_BY_USER'
                context.log_event("RESET_CANCELLED", {})
                return result

        try:
            removal = self.assigner.remove_assignments(context)
            result['assignments_removed'] = removal['removed']
            result['failures'].extend(removal['failed'])
        except ResourceNotFoundError:
            print("  ℹ Resource group not found - no assignments to remove")

        print("\nDeleting vaults...")
        for vault in vaults:
            try:
                self.keyvault_client.vaults.delete(self.resource_group, vault['name'])
                result['vaults_deleted'].append(vault['name'])
                print(f"  ✓ Deleted {vault['name']}")
            except HttpResponseError as e:
                result['failures'].append({'name': vault['name'], 'message': str(e.message)})
                print(f"  ✗ Failed to delete {vault['name']}: {e.message}")

        if purge:
            print("\nPurging deleted vaults...")
            for vault in vaults:
                if vault['name'] not in result['vaults_deleted']:
                    continue
                if vault['purge_protection']:
                    result['purge_skipped'].append(vault['name'])
                    print(f"  ○ {vault['name']}: purge protection enabled, stays soft-deleted")
                    continue
                try:
                    self.keyvault_client.vaults.begin_purge_deleted(
                        vault['name'], vault['location']).result()
                    result['vaults_purged'].append(vault['name'])
                    print(f"  ✓ Purged {vault['name']}")
                except HttpResponseError as e:
                    result['failures'].append({'name': vault['name'], 'message': str(e.message)})
                    print(f"  ✗ Failed to purge {vault['name']}: {e.message}")

        if delete_resource_group:
            print(f"\nDeleting resource group {self.resource_group} (this can take several minutes)...")
            try:
                self.resource_client.resource_groups.begin_delete(self.resource_group).result()
                result['resource_group_deleted'] = True
                print("  ✓ Resource group deleted")
            except ResourceNotFoundError:
                print("  ℹ Resource group does not exist")
            except HttpResponseError as e:
                result['failures'].append({'name': self.resource_group, 'message': str(e.message)})
                print(f"  ✗ Failed to delete resource group: {e.message}")

        if clean_artifacts:
            result['artifacts_removed'] = clean_artifact_directories(
                artifacts_dir, run_id=run_id, keep=context.run_id)
            print(f"\n  ✓ Removed {len(result['artifacts_removed'])} artifact director(ies)")

        result['status'] = 'COMPLETE' if not result['failures'] else 'COMPLETE_WITH_ERRORS'
        context.log_event("RESET_FINISHED", {
            'status': result['status'],
            'vaults_deleted': len(result['vaults_deleted']),
            'vaults_purged': len(result['vaults_purged']),
            'resource_group_deleted': result['resource_group_deleted'],
        })
        return result
