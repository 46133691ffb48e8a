"""
任务表结构（MySQL 8.0.16+）。

id 由列默认表达式在 INSERT 内生成（RANDOM_BYTES 拼出 UUID v4），
与行可见性在同一条语句内完成，应用侧不生成 id。
seq 是自增代理列，仅用于在同一连接内通过 LAST_INSERT_ID() 回读刚插入的行。
"""

UUID_V4_DEFAULT_SQL = (
    "LOWER(INSERT(INSERT(INSERT(INSERT(HEX("
    "(RANDOM_BYTES(16) & UNHEX('FFFFFFFFFFFF0FFF3FFFFFFFFFFFFFFF')) "
    "| UNHEX('00000000000040008000000000000000')"
    "), 9, 0, '-'), 14, 0, '-'), 19, 0, '-'), 24, 0, '-'))"
)

TASKS_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS web_crawl_tasks (
  seq BIGINT NOT NULL AUTO_INCREMENT COMMENT '插入序号',
  id CHAR(36) NOT NULL DEFAULT ({UUID_V4_DEFAULT_SQL}) COMMENT '任务 UUID（数据库生成）',
  user_email VARCHAR(255) NOT NULL COMMENT '用户邮箱',
  user_query TEXT NOT NULL COMMENT '用户查询',
  base_url VARCHAR(2048) NOT NULL COMMENT '起始 URL',
  status VARCHAR(16) NOT NULL DEFAULT 'new' COMMENT 'new/completed/error',
  crawl_result MEDIUMTEXT NULL COMMENT '爬取结果（仅 completed）',
  error_message TEXT NULL COMMENT '错误信息（仅 error）',
  received_at DATETIME(3) NOT NULL COMMENT '消息中的时间戳（UTC）',
  finished_at DATETIME(3) NULL COMMENT '进入终态的时间',
  created_at DATETIME(3) NOT NULL DEFAULT CURRENT_TIMESTAMP(3) COMMENT '创建时间',
  updated_at DATETIME(3) NOT NULL DEFAULT CURRENT_TIMESTAMP(3) ON UPDATE CURRENT_TIMESTAMP(3) COMMENT '更新时间',

  PRIMARY KEY (id),
  UNIQUE KEY uk_seq (seq),
  KEY idx_status_created (status, created_at),
  KEY idx_user_email_status (user_email, status),
  KEY idx_received (received_at),
  CONSTRAINT chk_web_crawl_tasks_status CHECK (status IN ('new', 'completed', 'error'))
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='Web 爬取任务'
"""
