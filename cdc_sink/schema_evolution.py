"""
Schema evolution management for CDC tables
Decides whether an incoming row schema can be written to an existing table
"""

import logging
from typing import Dict, Iterable, List, Tuple

from cdc_sink.errors import SchemaConflict
from cdc_sink.events import SchemaField, TableSchema

logger = logging.getLogger(__name__)


class SchemaEvolutionManager:
    """
    Manages automatic schema evolution for sink tables

    Determines which schema changes are safe to apply automatically:
    - Column additions (safe if nullable)
    - Type promotions (e.g., int32 -> int64, float32 -> float64)
    - Columns missing from incoming rows (safe if the table column is nullable)
    """

    # Type promotion map: smaller type -> larger type (safe promotions)
    TYPE_PROMOTIONS = {
        'int8': ['int16', 'int32', 'int64'],
        'int16': ['int32', 'int64'],
        'int32': ['int64'],
        'float32': ['float64'],
    }

    def __init__(self, allow_column_additions: bool = True,
                 allow_type_promotions: bool = True, allow_column_removals: bool = False):
        """
        Initialize schema evolution manager

        Args:
            allow_column_additions: Allow automatic addition of new columns
            allow_type_promotions: Allow safe type promotions (e.g., int32 -> int64)
            allow_column_removals: Accept rows missing a required table column (NOT RECOMMENDED)
        """
        self.allow_column_additions = allow_column_additions
        self.allow_type_promotions = allow_type_promotions
        self.allow_column_removals = allow_column_removals

    @classmethod
    def from_policy(cls, policy_name: str) -> 'SchemaEvolutionManager':
        return cls(**SchemaEvolutionPolicy.get_policy(policy_name))

    @staticmethod
    def _is_safe_type_promotion(old_type: str, new_type: str) -> bool:
        return new_type in SchemaEvolutionManager.TYPE_PROMOTIONS.get(old_type, [])

    def analyze_schema_changes(self, current_schema: TableSchema, new_schema: TableSchema) -> Dict[str, List[Dict]]:
        """
        Analyze differences between the table schema and an incoming row schema

        Args:
            current_schema: Current table schema
            new_schema: Schema of the incoming rows

        Returns:
            dict: Categorized changes with keys:
                - additions: List of new columns
                - removals: List of table columns absent from incoming rows
                - modifications: List of type changes
                - safe_evolutions: List of changes that can be applied automatically
                - unsafe_changes: List of changes requiring manual intervention
        """
        current_fields = {f.name: f for f in current_schema.fields}
        new_fields = {f.name: f for f in new_schema.fields}

        additions = []
        removals = []
        modifications = []
        safe_evolutions = []
        unsafe_changes = []

        for col_name, field in new_fields.items():
            if col_name not in current_fields:
                change = {
                    'type': 'addition',
                    'column': col_name,
                    'data_type': field.type,
                    'nullable': field.optional
                }
                additions.append(change)

                if field.optional and self.allow_column_additions:
                    safe_evolutions.append(change)
                elif not field.optional:
                    unsafe_changes.append({**change, 'reason': 'non-nullable column addition requires default value'})
                else:
                    unsafe_changes.append({**change, 'reason': 'column additions are disabled'})

        for col_name, field in current_fields.items():
            if col_name not in new_fields:
                change = {
                    'type': 'removal',
                    'column': col_name,
                    'data_type': field.type
                }
                removals.append(change)

                # the column stays in the table; incoming rows leave it null
                if not field.optional and not self.allow_column_removals:
                    unsafe_changes.append({**change, 'reason': 'required column missing from incoming rows'})

        for col_name in current_fields.keys() & new_fields.keys():
            old_type = current_fields[col_name].type
            new_type = new_fields[col_name].type

            # a narrower incoming type fits the existing wider column
            if old_type == new_type or self._is_safe_type_promotion(new_type, old_type):
                continue

            change = {
                'type': 'modification',
                'column': col_name,
                'old_type': old_type,
                'new_type': new_type
            }
            modifications.append(change)

            if self.allow_type_promotions and self._is_safe_type_promotion(old_type, new_type):
                safe_evolutions.append(change)
            else:
                unsafe_changes.append({**change, 'reason': 'type change may cause data loss or incompatibility'})

        return {
            'additions': additions,
            'removals': removals,
            'modifications': modifications,
            'safe_evolutions': safe_evolutions,
            'unsafe_changes': unsafe_changes
        }

    def can_auto_evolve(self, current_schema: TableSchema, new_schema: TableSchema) -> Tuple[bool, Dict]:
        """
        Determine if schema can be automatically evolved

        Returns:
            tuple: (can_evolve: bool, analysis: dict)
        """
        analysis = self.analyze_schema_changes(current_schema, new_schema)
        can_evolve = len(analysis['unsafe_changes']) == 0
        return can_evolve, analysis

    def evolve(self, table_name: str, current_schema: TableSchema, new_schema: TableSchema) -> TableSchema:
        """
        Compute the table schema needed to write rows of new_schema

        Args:
            table_name: Table name (for logging and errors)
            current_schema: Current table schema
            new_schema: Schema of the incoming rows

        Returns:
            TableSchema: Evolved schema (equal to current_schema if nothing changes)

        Raises:
            SchemaConflict: If the change is not safe under this policy
        """
        can_evolve, analysis = self.can_auto_evolve(current_schema, new_schema)
        if not can_evolve:
            self.log_unsafe_changes(table_name, analysis['unsafe_changes'])
            raise SchemaConflict(table_name, analysis['unsafe_changes'])

        safe_evolutions = analysis['safe_evolutions']
        if not safe_evolutions:
            logger.debug(f"{table_name}: No schema evolution needed")
            return current_schema

        logger.info(f"{table_name}: Applying automatic schema evolution ({len(safe_evolutions)} changes)")
        for change in safe_evolutions:
            if change['type'] == 'addition':
                logger.info(f"{table_name}: AUTO-EVOLVE: Adding column '{change['column']}' "
                            f"(type: {change['data_type']}, nullable: {change['nullable']})")
            elif change['type'] == 'modification':
                logger.info(f"{table_name}: AUTO-EVOLVE: Promoting column '{change['column']}' type "
                            f"from {change['old_type']} to {change['new_type']}")

        return self.merge_schemas(current_schema, new_schema)

    def log_unsafe_changes(self, table_name: str, unsafe_changes: List[Dict]):
        """Log unsafe schema changes that require manual intervention"""
        if not unsafe_changes:
            return

        logger.error(f"{table_name}: Schema contains {len(unsafe_changes)} UNSAFE change(s) requiring manual intervention:")

        for change in unsafe_changes:
            change_type = change['type']
            column = change['column']
            reason = change.get('reason', 'unknown')

            if change_type == 'addition':
                logger.error(f"{table_name}: UNSAFE: Cannot add column '{column}' - {reason}")
            elif change_type == 'modification':
                logger.error(f"{table_name}: UNSAFE: Cannot change column '{column}' type "
                             f"from {change['old_type']} to {change['new_type']} - {reason}")
            elif change_type == 'removal':
                logger.error(f"{table_name}: UNSAFE: Column '{column}' missing from incoming rows - {reason}")

    @classmethod
    def merge_schemas(cls, base_schema: TableSchema, new_schema: TableSchema) -> TableSchema:
        """
        Merge two schemas: promote widened types and append new fields

        Field order of base_schema is kept; new fields go at the end.
        """
        new_fields = {f.name: f for f in new_schema.fields}
        merged = []

        for field in base_schema.fields:
            incoming = new_fields.get(field.name)
            if incoming is not None and cls._is_safe_type_promotion(field.type, incoming.type):
                field = SchemaField(field.name, incoming.type, field.optional)
            merged.append(field)

        base_names = set(base_schema.field_names())
        for field in new_schema.fields:
            if field.name not in base_names:
                merged.append(field)
                logger.debug(f"Adding field to merged schema: {field.name} ({field.type})")

        return TableSchema(tuple(merged))

    def merge_batch_schemas(self, table_name: str, schemas: Iterable[TableSchema]) -> TableSchema:
        """
        Fold the row schemas of one sub-batch into a single write schema

        Raises:
            SchemaConflict: If two rows declare incompatible types for a column
        """
        merged = None
        for schema in schemas:
            if merged is None:
                merged = schema
                continue
            if schema == merged:
                continue

            conflicts = []
            merged_types = merged.as_dict()
            for field in schema.fields:
                old_type = merged_types.get(field.name)
                if old_type is None or old_type == field.type:
                    continue
                if not (self._is_safe_type_promotion(old_type, field.type)
                        or self._is_safe_type_promotion(field.type, old_type)):
                    conflicts.append({
                        'type': 'modification',
                        'column': field.name,
                        'old_type': old_type,
                        'new_type': field.type,
                        'reason': 'rows in one batch disagree on column type'
                    })
            if conflicts:
                self.log_unsafe_changes(table_name, conflicts)
                raise SchemaConflict(table_name, conflicts)

            merged = self.merge_schemas(merged, schema)

        return merged or TableSchema()


class SchemaEvolutionPolicy:
    """
    Configurable policies for schema evolution
    """

    # Permissive: allow additions and type promotions
    PERMISSIVE = {
        'allow_column_additions': True,
        'allow_type_promotions': True,
        'allow_column_removals': False
    }

    # Strict: no automatic changes
    STRICT = {
        'allow_column_additions': False,
        'allow_type_promotions': False,
        'allow_column_removals': False
    }

    # Additive only: only allow new columns
    ADDITIVE_ONLY = {
        'allow_column_additions': True,
        'allow_type_promotions': False,
        'allow_column_removals': False
    }

    POLICIES = {
        'permissive': PERMISSIVE,
        'strict': STRICT,
        'additive_only': ADDITIVE_ONLY
    }

    @staticmethod
    def get_policy(policy_name: str) -> Dict:
        """
        Get a predefined policy by name

        Args:
            policy_name: Policy name ('permissive', 'strict', 'additive_only')

        Returns:
            dict: Policy configuration
        """
        return SchemaEvolutionPolicy.POLICIES.get(policy_name.lower(), SchemaEvolutionPolicy.PERMISSIVE)
