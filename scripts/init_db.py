from anidao.config import load_config
from anidao.repo import SqliteRepo

cfg = load_config()
DB = cfg["database"]
SqliteRepo(DB).init_schema()
print("initialized db at", DB)
