"""
Django Admin configuration for catalog models.
"""
from django.contrib import admin
from .models import Product, ProductSize, ProductImage


class ProductSizeInline(admin.TabularInline):
    model = ProductSize
    extra = 0
    fields = ['size', 'stock', 'position']


class ProductImageInline(admin.TabularInline):
    model = ProductImage
    extra = 0
    fields = ['url', 'is_primary', 'position']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'price', 'sale_price', 'stock', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'description']
    ordering = ['name']
    readonly_fields = ['stock', 'created_at', 'updated_at']
    inlines = [ProductSizeInline, ProductImageInline]

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        form.instance.recalculate_stock()


@admin.register(ProductSize)
class ProductSizeAdmin(admin.ModelAdmin):
    list_display = ['id', 'product', 'size', 'stock', 'is_out_of_stock']
    list_filter = ['size']
    search_fields = ['product__name']
    raw_id_fields = ['product']

    def is_out_of_stock(self, obj):
        return obj.is_out_of_stock
    is_out_of_stock.boolean = True
    is_out_of_stock.short_description = 'Out of Stock'
