import pos_config
import pos_store
from pos_server import app


def init_database():
    conn = pos_store.connect(pos_config.POS_DB_PATH)
    try:
        pos_store.init_db(conn, pos_config.POS_SCHEMA_PATH)
    finally:
        conn.close()


if __name__ == '__main__':
    pos_config.configure_logging()
    init_database()
    app.run(host=pos_config.HOST, port=pos_config.PORT, debug=pos_config.FLASK_DEBUG)
