"""Recipe lookup and temporary recipe files."""
import json
import pathlib
import time
import uuid

from utils.config import RECIPE_DIR, TMP_DIR, logger


class RecipeResolver:
    """Reads recipe descriptors stored as ``<recipe_dir>/<id>.json``."""

    def __init__(self, recipe_dir=None, tmp_dir=None):
        self.recipe_dir = pathlib.Path(recipe_dir or RECIPE_DIR)
        self.tmp_dir = pathlib.Path(tmp_dir or TMP_DIR)

    def get_recipe_by_id(self, recipe_id):
        if not recipe_id or not isinstance(recipe_id, str):
            return None
        # Recipe ids are file stems, never paths.
        if "/" in recipe_id or "\\" in recipe_id or recipe_id.startswith("."):
            return None
        path = self.recipe_dir / f"{recipe_id}.json"
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"[Recipes] Unreadable recipe {path}: {exc}")
            return None
        if not isinstance(data, dict):
            return None
        data.setdefault("id", recipe_id)
        return data

    def list_recipes(self):
        if not self.recipe_dir.exists():
            return []
        recipes = []
        for path in sorted(self.recipe_dir.glob("*.json")):
            recipe = self.get_recipe_by_id(path.stem)
            if recipe is not None:
                recipes.append(recipe)
        return recipes

    def write_temp_recipe(self, recipe, session_name):
        """Serialize a descriptor so the agent can be pointed at it by path."""
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        safe_name = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in (session_name or "session"))
        path = self.tmp_dir / f"recipe-{safe_name}-{int(time.time())}-{uuid.uuid4().hex[:6]}.json"
        path.write_text(json.dumps(recipe, indent=2), encoding="utf-8")
        logger.info(f"[Recipes] Wrote temporary recipe {path}")
        return str(path)


def _remove_temp_recipe(path):
    if not path:
        return
    try:
        pathlib.Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning(f"[Recipes] Failed to remove temporary recipe {path}: {exc}")
