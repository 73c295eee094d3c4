import logging
from pathlib import Path


class DuplicateResolver:
    """Applies the file operation chosen for a duplicate pair."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def delete(self, path) -> bool:
        """
        Deletes one file of a duplicate pair.
        Returns True if the file is gone afterwards (or would be, in a dry run).
        """
        path = Path(path)

        if self.dry_run:
            logging.info(f"[DRY RUN] Delete {path}")
            return True

        try:
            path.unlink()
        except FileNotFoundError:
            logging.warning(f"File already gone: {path}")
            return True
        except OSError as e:
            logging.error(f"Failed to delete {path}: {e}")
            return False

        logging.info(f"Deleted {path}")
        return True
