"""流水线领域模型"""
