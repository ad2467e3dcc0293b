"""コアモデルと例外"""
