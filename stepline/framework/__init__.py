"""
framework/ - 框架层

共享组件、存储、外部适配器与编排服务。
"""
