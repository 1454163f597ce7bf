"""基础设施：并发、限流、文件锁与运行参数。"""
