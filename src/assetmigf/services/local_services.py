"""
本地参考实现：资产清点、分析和各阶段的业务处理

每个处理函数只改动一个条目，并返回足以逆转该改动的变更条目。
"""
import re
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..core.errors import ErrorKind, MigrationError
from ..core.models import ChangeType, Phase, WorkItem
from .interfaces import ContentRepository, StorageAdapter

TRANSFORM_DIR = "_transforms"
IMG_SRC_RE = re.compile(r'(<img\b[^>]*?\bsrc=")([^"]+)(")', re.IGNORECASE)
ASSET_REF_RE = re.compile(r"\{asset:(\d+)\}")


def asset_path(folder: str, filename: str) -> str:
    return f"{folder}/{filename}" if folder else filename


def _folder_of(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _name_of(path: str) -> str:
    return path.rsplit("/", 1)[-1]


class LocalMigrationServices:
    """基于 ContentRepository 和存储卷的迁移业务实现"""

    def __init__(
        self,
        repository: ContentRepository,
        volumes: Dict[str, StorageAdapter],
        source: str,
        target: str,
        quarantine: str,
        optimised_root: Optional[str] = None,
        target_subfolder: str = "",
    ):
        self.repository = repository
        self.volumes = volumes
        self.source = source
        self.target = target
        self.quarantine = quarantine
        self.optimised_root = optimised_root
        self.target_subfolder = target_subfolder or ""
        self._handlers: Dict[str, Callable[[WorkItem], List[Dict[str, Any]]]] = {
            Phase.OPTIMISED_ROOT.value: self._move_from_optimised_root,
            Phase.LINK_INLINE.value: self._link_inline,
            Phase.RESOLVE_DUPLICATES.value: self._resolve_duplicate,
            Phase.FIX_LINKS.value: self._fix_link,
            Phase.CONSOLIDATE.value: self._consolidate,
            Phase.QUARANTINE.value: self._quarantine,
            Phase.TEMP_CLEANUP.value: self._cleanup_transform,
            Phase.UPDATE_SUBFOLDER.value: self._update_subfolder,
        }

    def _volume(self, handle: str):
        if handle not in self.volumes:
            raise MigrationError(f"volume not found: {handle}", ErrorKind.NOT_FOUND)
        return self.volumes[handle]

    def _transfer(self, src_volume: str, src_path: str, dst_volume: str, dst_path: str) -> None:
        if src_volume == dst_volume:
            self._volume(src_volume).move(src_path, dst_path)
            return
        src = self._volume(src_volume)
        dst = self._volume(dst_volume)
        dst.write(dst_path, src.read(src_path))
        src.delete(src_path)

    def _asset(self, asset_id: int) -> Dict[str, Any]:
        asset = self.repository.get_asset(asset_id)
        if asset is None:
            raise MigrationError(f"asset not found: {asset_id}", ErrorKind.NOT_FOUND)
        return asset

    # ------------------------------------------------------------------
    # 准备、清点与分析
    # ------------------------------------------------------------------

    def prepare(self) -> Dict[str, Any]:
        for handle in (self.source, self.target, self.quarantine):
            self._volume(handle)
        return {
            'volumes': {handle: str(getattr(volume, 'root', '')) for handle, volume in self.volumes.items()},
            'source': self.source,
            'target': self.target,
            'quarantine': self.quarantine,
        }

    def has_optimised_root(self) -> bool:
        if not self.optimised_root or self.optimised_root not in self.volumes:
            return False
        return bool(self.repository.find_assets(volume=self.optimised_root))

    def build_asset_inventory(self) -> List[Dict[str, Any]]:
        inventory = []
        for asset in self.repository.find_assets():
            path = asset_path(asset['folder'], asset['filename'])
            volume = self.volumes.get(asset['volume'])
            inventory.append({
                **asset,
                'path': path,
                'file_exists': bool(volume and volume.exists(path)),
            })
        return inventory

    def build_file_inventory(self) -> List[Dict[str, Any]]:
        files = []
        for handle in (self.source, self.target, self.optimised_root):
            if not handle or handle not in self.volumes:
                continue
            for path in self.volumes[handle].list_files():
                files.append({
                    'volume': handle,
                    'path': path,
                    'filename': _name_of(path),
                    'folder': _folder_of(path),
                })
        return files

    def analyze(self, assets: List[Dict[str, Any]], files: List[Dict[str, Any]]) -> Dict[str, Any]:
        """根据清点结果生成各阶段的工作清单"""
        locations = {(a['volume'], a['path']) for a in assets}
        used = {r['asset_id'] for r in self.repository.find_relations()}
        by_filename: Dict[str, List[int]] = {}
        for asset in assets:
            by_filename.setdefault(asset['filename'], []).append(asset['id'])

        inline = []
        for row in self.repository.list_content():
            body = row['body'] or ""
            used.update(int(ref) for ref in ASSET_REF_RE.findall(body))
            for _, src, _ in IMG_SRC_RE.findall(body):
                if not ASSET_REF_RE.fullmatch(src) and _name_of(src) in by_filename:
                    inline.append(row['id'])
                    break

        by_location: Dict[str, List[int]] = {}
        by_checksum: Dict[str, List[Dict[str, Any]]] = {}
        for asset in assets:
            by_location.setdefault(f"{asset['volume']}:{asset['path']}", []).append(asset['id'])
            if asset.get('checksum'):
                by_checksum.setdefault(asset['checksum'], []).append(asset)

        # 同一位置的多条记录由 safe_duplicates 处理；内容相同但位置不同的由 resolve_duplicates 处理
        duplicate_groups = {key: ids for key, ids in by_location.items() if len(ids) > 1}
        checksum_groups = []
        for group in by_checksum.values():
            distinct = {(a['volume'], a['path']) for a in group}
            if len(distinct) > 1:
                checksum_groups.append(sorted(a['id'] for a in group))

        transforms = [f for f in files if f"{TRANSFORM_DIR}/" in f"/{f['path']}"]
        transform_keys = {(f['volume'], f['path']) for f in transforms}
        orphaned = [
            f for f in files
            if (f['volume'], f['path']) not in locations
            and (f['volume'], f['path']) not in transform_keys
            and f['volume'] != self.optimised_root
        ]

        analysis = {
            'inline_candidates': inline,
            'duplicate_groups': duplicate_groups,
            'checksum_duplicates': checksum_groups,
            'broken_links': [a['id'] for a in assets if not a['file_exists']],
            'to_consolidate': [
                a['id'] for a in assets if a['volume'] == self.source and a['file_exists']
            ],
            'optimised_root_assets': [
                a['id'] for a in assets if self.optimised_root and a['volume'] == self.optimised_root
            ],
            'unused_assets': [
                a['id'] for a in assets
                if a['id'] not in used and a['file_exists'] and a['volume'] != self.quarantine
            ],
            'orphaned_files': [{'volume': f['volume'], 'path': f['path']} for f in orphaned],
            'transform_files': [{'volume': f['volume'], 'path': f['path']} for f in transforms],
            'files_by_name': {},
        }
        for f in files:
            if f['volume'] != self.optimised_root and (f['volume'], f['path']) not in transform_keys:
                analysis['files_by_name'].setdefault(f['filename'], []).append(
                    {'volume': f['volume'], 'path': f['path']}
                )
        analysis['summary'] = {
            'assets': len(assets),
            'files': len(files),
            'inline_candidates': len(inline),
            'duplicate_groups': len(duplicate_groups),
            'checksum_duplicates': len(checksum_groups),
            'broken_links': len(analysis['broken_links']),
            'to_consolidate': len(analysis['to_consolidate']),
            'unused_assets': len(analysis['unused_assets']),
            'orphaned_files': len(orphaned),
            'transform_files': len(transforms),
        }
        return analysis

    def _refresh(self) -> Dict[str, Any]:
        return self.analyze(self.build_asset_inventory(), self.build_file_inventory())

    def work_items(self, phase: str, analysis: Dict[str, Any]) -> List[WorkItem]:
        """返回阶段的工作条目

        前面的阶段会改动记录和文件，所以这里按当前状态重新分析，
        传入的发现阶段结果只用于比对日志。
        """
        current = self._refresh()
        if phase == Phase.OPTIMISED_ROOT.value:
            return [WorkItem(f"asset-{i}", {'asset_id': i}) for i in current['optimised_root_assets']]
        if phase == Phase.LINK_INLINE.value:
            return [WorkItem(f"content-{i}", {'content_id': i}) for i in current['inline_candidates']]
        if phase == Phase.RESOLVE_DUPLICATES.value:
            items = []
            for group in current['checksum_duplicates']:
                kept = self._primary_of(group)
                items.extend(
                    WorkItem(f"asset-{i}", {'asset_id': i, 'kept_asset_id': kept})
                    for i in group if i != kept
                )
            return items
        if phase == Phase.FIX_LINKS.value:
            return [
                WorkItem(f"asset-{i}", {'asset_id': i, 'candidates': current['files_by_name']})
                for i in current['broken_links']
            ]
        if phase == Phase.CONSOLIDATE.value:
            return [WorkItem(f"asset-{i}", {'asset_id': i}) for i in current['to_consolidate']]
        if phase == Phase.QUARANTINE.value:
            items = [WorkItem(f"asset-{i}", {'kind': 'asset', 'asset_id': i}) for i in current['unused_assets']]
            items.extend(
                WorkItem(f"file-{f['volume']}:{f['path']}", {'kind': 'file', **f})
                for f in current['orphaned_files']
            )
            return items
        if phase == Phase.TEMP_CLEANUP.value:
            return [
                WorkItem(f"transform-{f['volume']}:{f['path']}", dict(f))
                for f in current['transform_files']
            ]
        if phase == Phase.UPDATE_SUBFOLDER.value:
            if self.target_subfolder and self.repository.get_volume_subfolder(self.target) != self.target_subfolder:
                return [WorkItem(f"volume-{self.target}", {'volume': self.target})]
            return []
        return []

    def apply(self, phase: str, item: WorkItem) -> List[Dict[str, Any]]:
        handler = self._handlers.get(phase)
        if handler is None:
            raise MigrationError(f"invalid phase for apply: {phase}", ErrorKind.INVALID)
        return handler(item)

    # ------------------------------------------------------------------
    # 各阶段处理
    # ------------------------------------------------------------------

    def _relocate(self, asset: Dict[str, Any], to_volume: str, to_folder: str, change_type: ChangeType) -> Dict[str, Any]:
        """移动资产文件并更新记录；目标已有文件时只更新记录"""
        from_path = asset_path(asset['folder'], asset['filename'])
        to_path = asset_path(to_folder, asset['filename'])
        if change_type != ChangeType.QUARANTINED_UNUSED_ASSET and self._volume(to_volume).exists(to_path):
            # 文件已由批量传输工具复制
            self.repository.move_asset(asset['id'], to_volume, to_folder)
            return {
                'type': ChangeType.UPDATED_ASSET_PATH.value,
                'asset_id': asset['id'],
                'old_volume': asset['volume'],
                'old_folder': asset['folder'],
                'new_volume': to_volume,
                'new_folder': to_folder,
            }

        self._transfer(asset['volume'], from_path, to_volume, to_path)
        self.repository.move_asset(asset['id'], to_volume, to_folder)
        return {
            'type': change_type.value,
            'asset_id': asset['id'],
            'filename': asset['filename'],
            'from_volume': asset['volume'],
            'from_folder': asset['folder'],
            'from_path': from_path,
            'to_volume': to_volume,
            'to_folder': to_folder,
            'to_path': to_path,
        }

    def _move_from_optimised_root(self, item: WorkItem) -> List[Dict[str, Any]]:
        asset = self._asset(item.payload['asset_id'])
        return [self._relocate(asset, self.target, asset['folder'], ChangeType.MOVED_FROM_OPTIMISED_ROOT)]

    def _link_inline(self, item: WorkItem) -> List[Dict[str, Any]]:
        content_id = item.payload['content_id']
        row = next((c for c in self.repository.list_content() if c['id'] == content_id), None)
        if row is None:
            raise MigrationError(f"content not found: {content_id}", ErrorKind.NOT_FOUND)

        linked = []

        def replace(match):
            src = match.group(2)
            candidates = self.repository.find_assets(filename=_name_of(src))
            if ASSET_REF_RE.fullmatch(src) or not candidates:
                return match.group(0)
            linked.append(candidates[0]['id'])
            return f"{match.group(1)}{{asset:{candidates[0]['id']}}}{match.group(3)}"

        original = row['body'] or ""
        updated = IMG_SRC_RE.sub(replace, original)
        if updated == original:
            return []
        self.repository.update_field('content', content_id, 'body', updated)
        return [{
            'type': ChangeType.INLINE_IMAGE_LINKED.value,
            'table': 'content',
            'record_id': content_id,
            'field': 'body',
            'original_content': original,
            'new_content': updated,
            'asset_ids': linked,
        }]

    def _primary_of(self, asset_ids: List[int]) -> int:
        counts = {i: len(self.repository.find_relations(i)) for i in asset_ids}
        return max(sorted(asset_ids), key=lambda i: counts[i])

    def _resolve_duplicate(self, item: WorkItem) -> List[Dict[str, Any]]:
        asset_id = item.payload['asset_id']
        kept = item.payload['kept_asset_id']
        self._asset(asset_id)
        relation_ids = [r['id'] for r in self.repository.find_relations(asset_id)]
        self.repository.repoint_relations(relation_ids, kept)
        self.repository.delete_asset(asset_id)
        return [{
            'type': ChangeType.DELETED_DUPLICATE_ASSET.value,
            'asset_id': asset_id,
            'kept_asset_id': kept,
            'relation_ids': relation_ids,
        }]

    def _fix_link(self, item: WorkItem) -> List[Dict[str, Any]]:
        asset = self._asset(item.payload['asset_id'])
        candidates = item.payload.get('candidates', {}).get(asset['filename'], [])
        if not candidates:
            logger.warning(f"未找到资产 {asset['id']} 的文件: {asset['filename']}")
            return [{
                'type': ChangeType.BROKEN_LINK_NOT_FIXED.value,
                'asset_id': asset['id'],
                'filename': asset['filename'],
            }]
        # 优先使用目标卷上的文件
        found = sorted(candidates, key=lambda f: (f['volume'] != self.target, f['path']))[0]
        new_folder = _folder_of(found['path'])
        self.repository.move_asset(asset['id'], found['volume'], new_folder)
        return [{
            'type': ChangeType.FIXED_BROKEN_LINK.value,
            'asset_id': asset['id'],
            'original_volume': asset['volume'],
            'original_folder': asset['folder'],
            'new_volume': found['volume'],
            'new_folder': new_folder,
        }]

    def _consolidate(self, item: WorkItem) -> List[Dict[str, Any]]:
        asset = self._asset(item.payload['asset_id'])
        return [self._relocate(asset, self.target, asset['folder'], ChangeType.MOVED_ASSET)]

    def _quarantine(self, item: WorkItem) -> List[Dict[str, Any]]:
        if item.payload['kind'] == 'asset':
            asset = self._asset(item.payload['asset_id'])
            to_folder = asset_path(asset['volume'], asset['folder']).rstrip("/")
            return [self._relocate(asset, self.quarantine, to_folder, ChangeType.QUARANTINED_UNUSED_ASSET)]

        volume = item.payload['volume']
        path = item.payload['path']
        quarantine_path = f"orphans/{volume}/{path}"
        self._transfer(volume, path, self.quarantine, quarantine_path)
        return [{
            'type': ChangeType.QUARANTINED_ORPHANED_FILE.value,
            'source_volume': volume,
            'source_path': path,
            'quarantine_volume': self.quarantine,
            'quarantine_path': quarantine_path,
        }]

    def _cleanup_transform(self, item: WorkItem) -> List[Dict[str, Any]]:
        self._volume(item.payload['volume']).delete(item.payload['path'])
        return [{
            'type': ChangeType.DELETED_TRANSFORM.value,
            'volume': item.payload['volume'],
            'path': item.payload['path'],
        }]

    def _update_subfolder(self, item: WorkItem) -> List[Dict[str, Any]]:
        volume = item.payload['volume']
        old = self.repository.get_volume_subfolder(volume)
        self.repository.set_volume_subfolder(volume, self.target_subfolder)
        return [{
            'type': ChangeType.FILESYSTEM_UPDATE.value,
            'volume': volume,
            'old_subfolder': old,
            'new_subfolder': self.target_subfolder,
        }]

    # ------------------------------------------------------------------
    # safe_duplicates 的分步处理
    # ------------------------------------------------------------------

    def duplicate_groups(self, analysis: Dict[str, Any]) -> Dict[str, List[int]]:
        return dict(analysis.get('duplicate_groups') or {})

    def stage_duplicate_group(self, group: Dict[str, Any]) -> Dict[str, Any]:
        relations = {
            str(asset_id): [r['id'] for r in self.repository.find_relations(asset_id)]
            for asset_id in group['asset_ids']
        }
        return {'relations': relations}

    def choose_primary(self, group: Dict[str, Any]) -> int:
        """关联最多的记录作为主记录，相同时取 ID 最小的"""
        relations = group.get('data', {}).get('relations', {})
        return max(sorted(group['asset_ids']), key=lambda i: len(relations.get(str(i), [])))

    def clean_duplicate_group(self, group: Dict[str, Any]) -> List[Dict[str, Any]]:
        primary = group['primary_asset_id']
        changes = []
        for asset_id in group['asset_ids']:
            if asset_id == primary or self.repository.get_asset(asset_id) is None:
                continue
            relation_ids = [r['id'] for r in self.repository.find_relations(asset_id)]
            self.repository.repoint_relations(relation_ids, primary)
            self.repository.delete_asset(asset_id)
            changes.append({
                'type': ChangeType.DELETED_DUPLICATE_ASSET.value,
                'asset_id': asset_id,
                'kept_asset_id': primary,
                'relation_ids': relation_ids,
                'file_key': group['file_key'],
            })
        return changes

    def verify_duplicate_group(self, group: Dict[str, Any]) -> bool:
        primary = self.repository.get_asset(group['primary_asset_id'])
        if primary is None:
            return False
        volume = self.volumes.get(primary['volume'])
        return bool(volume and volume.exists(asset_path(primary['folder'], primary['filename'])))

    # ------------------------------------------------------------------
    # 备份与校验
    # ------------------------------------------------------------------

    def create_backup(self, path) -> Dict[str, Any]:
        tables = self.repository.dump_backup(path)
        return {'file': str(path), 'tables': tables}

    def verify(self) -> Dict[str, Any]:
        assets = self.build_asset_inventory()
        missing = [a['id'] for a in assets if not a['file_exists']]
        quarantined = [a['id'] for a in assets if a['volume'] == self.quarantine]
        result = {
            'assets': len(assets),
            'missing_files': missing,
            'quarantined_assets': len(quarantined),
            'on_target': len([a for a in assets if a['volume'] == self.target]),
            'subfolder': self.repository.get_volume_subfolder(self.target),
        }
        if missing:
            logger.warning(f"校验发现 {len(missing)} 个资产缺少文件")
        return result
