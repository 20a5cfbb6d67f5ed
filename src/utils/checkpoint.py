import os
import json
import logging
from typing import Optional
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

class CheckpointManager:
    """
    Persists the detection cursor (time of the last log handed to the
    detection engine) so a restart neither skips nor re-detects logs.
    """
    def __init__(self, checkpoint_file: str = 'data/checkpoint.json'):
        self.checkpoint_file = checkpoint_file
        self._ensure_directory()

    def _ensure_directory(self):
        directory = os.path.dirname(self.checkpoint_file)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
            logger.info(f"Created checkpoint directory: {directory}")

    def save(self, cursor: datetime, logs_count: int = 0):
        """
        Save the detection cursor to disk.

        Args:
            cursor: Time of the last processed log (naive values are taken as UTC)
            logs_count: Size of the batch that advanced the cursor
        """
        if cursor.tzinfo is None:
            cursor = cursor.replace(tzinfo=timezone.utc)
        try:
            checkpoint_data = {
                'cursor': cursor.isoformat(),
                'updated_at': datetime.now(timezone.utc).isoformat(),
                'logs_count': logs_count
            }

            tmp_path = f"{self.checkpoint_file}.tmp"
            with open(tmp_path, 'w') as f:
                json.dump(checkpoint_data, f, indent=2)
            os.replace(tmp_path, self.checkpoint_file)

            logger.debug(f"Checkpoint saved: {checkpoint_data['cursor']}")
        except OSError as e:
            logger.error(f"Failed to save checkpoint: {e}")

    def load(self) -> Optional[datetime]:
        """
        Load the detection cursor.

        Returns:
            Timezone-aware datetime if a checkpoint exists, None otherwise
        """
        if not os.path.exists(self.checkpoint_file):
            logger.info("No checkpoint file found, starting fresh")
            return None

        try:
            with open(self.checkpoint_file, 'r') as f:
                checkpoint_data = json.load(f)
            cursor = datetime.fromisoformat(checkpoint_data['cursor'])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load checkpoint: {e}")
            return None

        if cursor.tzinfo is None:
            cursor = cursor.replace(tzinfo=timezone.utc)
        logger.info(f"Checkpoint loaded: {cursor.isoformat()} (last updated: {checkpoint_data.get('updated_at')})")
        return cursor

    def reset(self):
        """Remove checkpoint file to start from scratch."""
        try:
            if os.path.exists(self.checkpoint_file):
                os.remove(self.checkpoint_file)
                logger.info("Checkpoint reset")
        except OSError as e:
            logger.error(f"Failed to reset checkpoint: {e}")
