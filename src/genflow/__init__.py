"""
媒体生成编排服务
"""
__version__ = "0.1.0"
